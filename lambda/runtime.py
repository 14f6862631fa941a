import json
import os
import random
import time
from contextvars import ContextVar
from typing import Any, Dict, Optional, Tuple

import boto3

REQUEST_TIMEOUT = (10, 30)
SSM_CACHE: Dict[str, Tuple[str, float]] = {}
SSM_CACHE_TTL_SECONDS = int(os.environ.get("SSM_CACHE_TTL_SECONDS", "300"))
_SSM_CLIENT: Any = None

RUN_ID_VAR: ContextVar[str] = ContextVar("run_id", default="")

ENV_CONFIG = {
    "spotify_client_id": os.environ.get("SPOTIFY_CLIENT_ID"),
    "spotify_client_secret": os.environ.get("SPOTIFY_CLIENT_SECRET"),
    "spotify_client_id_param": os.environ.get("PARAM_SPOTIFY_CLIENT_ID"),
    "spotify_client_secret_param": os.environ.get("PARAM_SPOTIFY_CLIENT_SECRET"),
    "rate_limiting_enabled": os.environ.get("RATE_LIMITING_ENABLED", "false").lower()
    == "true",
    "rate_limit_per_day": int(os.environ.get("RATE_LIMIT_PER_DAY", "10")),
    "rate_limit_table": os.environ.get("RATE_LIMIT_TABLE", "daily-roast-limits"),
    "roast_storage_enabled": os.environ.get("ROAST_STORAGE_ENABLED", "false").lower()
    == "true",
    "database_url": os.environ.get("DATABASE_URL"),
    "rds_host": os.environ.get("RDS_HOST", "localhost"),
    "rds_user": os.environ.get("RDS_USER", "root"),
    "db_password": os.environ.get("DB_PASSWORD"),
    "db_password_param": os.environ.get("PARAM_DB_PASSWORD"),
    "rds_database": os.environ.get("RDS_DATABASE", "roast_spotify"),
    "rds_port": int(os.environ.get("RDS_PORT", "3306")),
    "db_ssl": os.environ.get("DB_SSL", "false").lower() == "true",
    "db_max_attempts": int(os.environ.get("DB_MAX_ATTEMPTS", "3")),
    "bedrock_model_id": os.environ.get(
        "BEDROCK_MODEL_ID", "anthropic.claude-3-haiku-20240307-v1:0"
    ),
    "bedrock_region": os.environ.get(
        "BEDROCK_REGION", os.environ.get("AWS_REGION", "ap-southeast-1")
    ),
    "display_timezone": os.environ.get("DISPLAY_TIMEZONE", "Asia/Kuala_Lumpur"),
    "expose_error_details": os.environ.get("STAGE", "") == "dev",
}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Content-Type": "application/json",
}

STATUS_MESSAGES = {
    400: "Eh, your request got problem...Anyway do not ping the developer she is lazy",
    404: "what you looking bro?",
    409: "Sudah kena roast already, cari playlist lain la",
    429: "Plzzzz rileks T_T",
    500: "System down ig, dev skill issue boleh cuba next time la (dont)",
    503: "Mmmm our friends upstream having a moment, try again later",
}
DEFAULT_STATUS_MESSAGE = "whopsie.. i guess its time to stop dawg"

ERROR_TEXT = {
    "invalid_url": "Adoiii not valid URL la check properly?",
    "missing_url": "Aik mana URL you want me to roast?",
    "playlist_not_found": (
        "Either your playlist not found or private lah! So make sure it's public "
        "and link is correct so I can roast"
    ),
    "general": "Alamak! Something went wrong while roasting your playlist!",
    "spotify": "Mmmm spotify API got problem I think? Try again later (please go home)",
    "throttled": "Aih, slow down a bit boleh ka too many roasts already. Sabarrr",
    "duplicate": (
        "Eh this playlist already kena roast already la! Submit fresh playlist "
        "can or not?"
    ),
    "empty_playlist": "Your playlist got zero songs, what you want me to roast?",
}


def log(level: str, msg: str, **details: Any) -> None:
    prefix = {
        "info": "[info]",
        "warning": "[warning]",
        "critical": "[critical]",
    }.get(level, "[info]")
    ctx = {}
    run_id = RUN_ID_VAR.get()
    if run_id:
        ctx["run_id"] = run_id
    payload = {**ctx, **details} if details or ctx else None
    suffix = f" {json.dumps(payload, sort_keys=True, default=str)}" if payload else ""
    print(f"{prefix} {msg}{suffix}")


class HTTPError(Exception):
    status_code = 500

    def __init__(
        self,
        message: str,
        details: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        self.message = message
        self.details = details
        self.headers = headers or {}

    def to_body(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "error": self.message,
            "message": STATUS_MESSAGES.get(self.status_code, DEFAULT_STATUS_MESSAGE),
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(HTTPError):
    status_code = 400


class NotFoundError(HTTPError):
    status_code = 404


class ConflictError(HTTPError):
    status_code = 409


class RateLimitError(HTTPError):
    status_code = 429


class UpstreamUnavailable(HTTPError):
    status_code = 503


class InternalError(HTTPError):
    status_code = 500


def build_response(
    status_code: int, body: Optional[Dict[str, Any]], headers: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    final_headers = dict(CORS_HEADERS)
    if headers:
        final_headers.update(headers)
    return {
        "statusCode": status_code,
        "headers": final_headers,
        "body": json.dumps(body, default=str) if body is not None else "",
    }


def success_response(data: Dict[str, Any], status_code: int = 200) -> Dict[str, Any]:
    return build_response(status_code, {"success": True, **data})


def error_response(exc: HTTPError) -> Dict[str, Any]:
    return build_response(exc.status_code, exc.to_body(), exc.headers)


def get_ssm_client() -> Any:
    global _SSM_CLIENT
    if _SSM_CLIENT is None:
        _SSM_CLIENT = boto3.client("ssm")
    return _SSM_CLIENT


def ssm_get_parameter(name: str, force_refresh: bool = False) -> str:
    now = time.time()
    if not force_refresh:
        cached = SSM_CACHE.get(name)
        if cached and cached[1] > now:
            return cached[0]

    client = get_ssm_client()
    try:
        response = client.get_parameter(Name=name, WithDecryption=True)
    except client.exceptions.ParameterNotFound as exc:
        raise UpstreamUnavailable(f"ssm parameter {name} not found") from exc

    value = response["Parameter"]["Value"]
    SSM_CACHE[name] = (value, now + SSM_CACHE_TTL_SECONDS)
    return value


def get_config_secret(value_key: str, param_key: str) -> Optional[str]:
    """Return a secret from the environment, falling back to its SSM parameter."""
    value = ENV_CONFIG.get(value_key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    param_name = ENV_CONFIG.get(param_key)
    if not param_name:
        return None
    return ssm_get_parameter(param_name)


def compute_retry_sleep(attempt: int, max_sleep_s: float) -> float:
    base = min(max_sleep_s, 2 * (2 ** (attempt - 1)))
    jitter = random.uniform(0, max(0.5 * base, 0.1))
    return min(base + jitter, max_sleep_s)


def sleep_for(seconds: float) -> None:
    if seconds > 0:
        time.sleep(seconds)


def safe_get(container: Dict[str, Any], *keys: str) -> Optional[Any]:
    value: Any = container
    for key in keys:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value
