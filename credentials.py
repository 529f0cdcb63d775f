# credentials.py
"""LLM credential handling: plain provider/model config plus an encrypted API key."""

from __future__ import annotations

import logging
from typing import Any, Optional

from llm_client import SUPPORTED_MODELS, LlmSettings, parse_provider
from persistence.db import Storage

logger = logging.getLogger(__name__)

LLM_SETTINGS_KEY = "llmSettings"
LLM_API_KEY_SECRET = "llmApiKey"


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return ""
    if len(value) > 8:
        return f"{value[:4]}…{value[-4:]}"
    return "*" * max(len(value), 4)


class CredentialStore:
    def __init__(self, storage: Storage, timeout: int = 30) -> None:
        self.storage = storage
        self.timeout = timeout

    def migrate_plaintext_key(self) -> bool:
        """Move a legacy plaintext ``apiKey`` into the secret channel.

        Returns ``True`` when a key was migrated. Safe to call repeatedly.
        """

        record = self._plain_record()
        legacy_key = record.pop("apiKey", None)
        if legacy_key is None:
            return False

        if isinstance(legacy_key, str) and legacy_key.strip():
            if not self.storage.get_secret(LLM_API_KEY_SECRET):
                self.storage.set_secret(LLM_API_KEY_SECRET, legacy_key.strip())
        self.storage.set_setting(LLM_SETTINGS_KEY, record)
        logger.info("llm_key_migrated", extra={"provider": record.get("provider")})
        return True

    def get_llm_settings(self) -> dict[str, Any]:
        self.migrate_plaintext_key()
        record = self._plain_record()
        api_key = self.storage.get_secret(LLM_API_KEY_SECRET)
        return {
            "provider": record.get("provider") or "openai",
            "model": record.get("model") or "",
            "hasApiKey": bool(api_key),
            "apiKeyMasked": mask_secret(api_key),
        }

    def save_llm_settings(self, provider: Any, model: Any, api_key: Any = None) -> dict[str, Any]:
        provider_kind = parse_provider(provider)
        if provider_kind is None:
            return {"error": f"Unsupported LLM provider: {provider!r}."}

        model_name = str(model or "").strip()
        if not model_name:
            return {"error": "Please select a model."}
        if model_name not in SUPPORTED_MODELS[provider_kind]:
            return {"error": f"Model {model_name} is not available for {provider_kind.value}."}

        self.migrate_plaintext_key()
        stored_key = self.storage.get_secret(LLM_API_KEY_SECRET)
        submitted = str(api_key or "").strip()
        if submitted and submitted != mask_secret(stored_key):
            self.storage.set_secret(LLM_API_KEY_SECRET, submitted)
        elif not stored_key:
            return {"error": "Please enter an API key."}

        self.storage.set_setting(
            LLM_SETTINGS_KEY, {"provider": provider_kind.value, "model": model_name}
        )
        logger.info(
            "llm_settings_saved",
            extra={"provider": provider_kind.value, "model": model_name},
        )
        return {"success": True}

    def load_credential(self) -> Optional[LlmSettings]:
        """Cleartext credential for the completion call; ``None`` when unconfigured."""

        self.migrate_plaintext_key()
        record = self._plain_record()
        provider_kind = parse_provider(record.get("provider"))
        model_name = str(record.get("model") or "").strip()
        api_key = self.storage.get_secret(LLM_API_KEY_SECRET)
        if provider_kind is None or not model_name or not api_key:
            return None
        return LlmSettings(
            provider=provider_kind, model=model_name, api_key=api_key, timeout=self.timeout
        )

    def _plain_record(self) -> dict[str, Any]:
        record = self.storage.get_setting(LLM_SETTINGS_KEY, {})
        return dict(record) if isinstance(record, dict) else {}
