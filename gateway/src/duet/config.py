from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class GatewayConfig:
    max_identities: int = 2
    token_ttl_s: int = 30 * 24 * 60 * 60
    default_page_size: int = 20
    max_page_size: int = 100
    image_max_bytes: int = 10 * 1024 * 1024
    video_max_bytes: int = 50 * 1024 * 1024
    avatar_max_bytes: int = 5 * 1024 * 1024
    min_password_length: int = 6
    public_base_url: str = "http://localhost:8080"
    uploads_dir: str = "uploads"
    log_json: bool = True
    expose_errors: bool = False

    @property
    def token_ttl_ms(self) -> int:
        return self.token_ttl_s * 1000


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_int(name: str, default: int) -> int:
    parsed = _parse_non_negative_int(name, default)
    if parsed == 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_bool01(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def _parse_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def load_config_from_env() -> GatewayConfig:
    defaults = GatewayConfig()
    default_page_size = _parse_positive_int("DUET_DEFAULT_PAGE_SIZE", defaults.default_page_size)
    max_page_size = _parse_positive_int("DUET_MAX_PAGE_SIZE", defaults.max_page_size)
    if default_page_size > max_page_size:
        raise ValueError("DUET_DEFAULT_PAGE_SIZE must not exceed DUET_MAX_PAGE_SIZE")
    return GatewayConfig(
        max_identities=_parse_positive_int("DUET_MAX_IDENTITIES", defaults.max_identities),
        token_ttl_s=_parse_positive_int("DUET_TOKEN_TTL_S", defaults.token_ttl_s),
        default_page_size=default_page_size,
        max_page_size=max_page_size,
        image_max_bytes=_parse_positive_int("DUET_IMAGE_MAX_BYTES", defaults.image_max_bytes),
        video_max_bytes=_parse_positive_int("DUET_VIDEO_MAX_BYTES", defaults.video_max_bytes),
        avatar_max_bytes=_parse_positive_int("DUET_AVATAR_MAX_BYTES", defaults.avatar_max_bytes),
        min_password_length=_parse_non_negative_int("DUET_MIN_PASSWORD_LENGTH", defaults.min_password_length),
        public_base_url=_parse_str("DUET_PUBLIC_BASE_URL", defaults.public_base_url).rstrip("/"),
        uploads_dir=_parse_str("DUET_UPLOADS_DIR", defaults.uploads_dir),
        log_json=_parse_bool01("DUET_LOG_JSON", defaults.log_json),
        expose_errors=_parse_bool01("DUET_EXPOSE_ERRORS", defaults.expose_errors),
    )
