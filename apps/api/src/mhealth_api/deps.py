"""Shared route dependencies; override in tests via ``app.dependency_overrides``."""
from fastapi import Depends
from mhealth_core.config import Settings
from mhealth_core.push import WebPushSender


def get_settings() -> Settings:
    return Settings()


def get_push_sender(settings: Settings = Depends(get_settings)):
    return WebPushSender(settings)
