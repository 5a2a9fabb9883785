"""Choosing the identity a publish runs under."""

import base64
import binascii
import json
from collections.abc import Callable
from typing import Any

from appforge.config import Settings
from appforge.core.errors import ConfigurationError, CredentialError
from appforge.core.logging import get_logger
from appforge.models.app import PublishingMode
from appforge.schemas.publish import CentralCredentials, PublishCredentials, UserCredentials

logger = get_logger(__name__)

NOT_CONNECTED = "No Google Play account connected. Connect your Play account via OAuth first."
RECONNECT = "Your Google Play connection could not be read. Please reconnect your account."


def resolve_publish_credentials(
    mode: PublishingMode | str | None,
    refresh_token_enc: str | None,
    decrypt: Callable[[str], str],
) -> PublishCredentials:
    """
    Pick central or user-owned credentials for one publish call.

    A user-mode app never falls back to the central identity: a missing or
    undecryptable token is a CredentialError.
    """
    if PublishingMode(mode or PublishingMode.CENTRAL) == PublishingMode.CENTRAL:
        return CentralCredentials()

    envelope = (refresh_token_enc or "").strip()
    if not envelope:
        raise CredentialError(NOT_CONNECTED)

    try:
        refresh_token = decrypt(envelope)
    except (ValueError, ConfigurationError) as e:
        logger.bind(error=str(e)).warning("publish_token_decrypt_failed")
        raise CredentialError(RECONNECT) from e

    if not refresh_token:
        raise CredentialError(RECONNECT)
    return UserCredentials(refresh_token=refresh_token)


def load_service_account_info(settings: Settings) -> dict[str, Any]:
    """Service account JSON from raw or base64 settings."""
    text = settings.google_play_service_account_json.strip()
    if not text and settings.google_play_service_account_b64.strip():
        try:
            text = base64.b64decode(settings.google_play_service_account_b64.strip()).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ConfigurationError("Invalid GOOGLE_PLAY_SERVICE_ACCOUNT_B64 (must be base64 JSON)") from e

    if not text:
        raise ConfigurationError(
            "Missing Google Play credentials. Set GOOGLE_PLAY_SERVICE_ACCOUNT_JSON (raw JSON) "
            "or GOOGLE_PLAY_SERVICE_ACCOUNT_B64 (base64)."
        )

    try:
        info = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError("Invalid GOOGLE_PLAY_SERVICE_ACCOUNT_JSON/B64 (must be valid JSON)") from e

    if not isinstance(info, dict) or not info.get("client_email") or not info.get("private_key"):
        raise ConfigurationError("Google Play service account JSON missing client_email/private_key")
    return info
