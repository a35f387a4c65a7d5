import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    av_backend: str
    clamscan_path: str
    av_timeout_seconds: int

    ocr_languages: tuple[str, ...]
    ocr_timeout_seconds: int
    tesseract_path: str
    pdftoppm_path: str

    postprocess_mode: str
    approval_strict_sequential: bool


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def _getenv_bool(name: str, default: bool) -> bool:
    raw = _getenv(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _parse_languages(raw: str) -> tuple[str, ...]:
    # Comma separated, most specific first: "kaz+rus+eng,rus+eng,eng"
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///cdms.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "us-east-1"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        av_backend=_getenv("AV_BACKEND", "none").lower(),
        clamscan_path=_getenv("CLAMSCAN_PATH", "clamscan"),
        av_timeout_seconds=_getenv_int("AV_TIMEOUT_SECONDS", 120),
        ocr_languages=_parse_languages(_getenv("OCR_LANGUAGES", "kaz+rus+eng,rus+eng,eng")),
        ocr_timeout_seconds=_getenv_int("OCR_TIMEOUT_SECONDS", 60),
        tesseract_path=_getenv("TESSERACT_PATH", "tesseract"),
        pdftoppm_path=_getenv("PDFTOPPM_PATH", "pdftoppm"),
        postprocess_mode=_getenv("POSTPROCESS_MODE", "thread").lower(),
        approval_strict_sequential=_getenv_bool("APPROVAL_STRICT_SEQUENTIAL", True),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "AV_BACKEND": s.av_backend,
        "CLAMSCAN_PATH": s.clamscan_path,
        "AV_TIMEOUT_SECONDS": s.av_timeout_seconds,
        "OCR_LANGUAGES": s.ocr_languages,
        "OCR_TIMEOUT_SECONDS": s.ocr_timeout_seconds,
        "TESSERACT_PATH": s.tesseract_path,
        "PDFTOPPM_PATH": s.pdftoppm_path,
        "POSTPROCESS_MODE": s.postprocess_mode,
        "APPROVAL_STRICT_SEQUENTIAL": s.approval_strict_sequential,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # file upload limits (25MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
