import base64
import json
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

from music_analysis import (
    analyze,
    build_playlist_metadata,
    generate_roasting_angles,
    get_cultural_diversity,
)
from rate_limiter import RateLimiter
from roast_generator import RoastGenerator
from roast_storage import (
    DuplicateDetector,
    PlaylistMetadataStore,
    RoastStore,
    SQLConnection,
)
from runtime import (
    ENV_CONFIG,
    ERROR_TEXT,
    RUN_ID_VAR,
    ConflictError,
    HTTPError,
    InternalError,
    NotFoundError,
    RateLimitError,
    ValidationError,
    build_response,
    error_response,
    log,
    safe_get,
    success_response,
)
from spotify_client import SpotifyClient, validate_playlist_url

DEFAULT_FEED_LIMIT = 10
MAX_FEED_LIMIT = 50
MAX_DISPLAY_NAME_LENGTH = 255
PAGINATION_ERROR = "Invalid pagination parameters. Page must be >= 1, limit must be 1-50."
ROAST_DETAIL_PATH = re.compile(r"/api/roasts/([A-Za-z0-9_-]+)$")


@dataclass
class Services:
    fetcher: Any
    rate_limiter: RateLimiter
    duplicate_detector: DuplicateDetector
    roast_store: RoastStore
    metadata_store: PlaylistMetadataStore
    generator: RoastGenerator
    connection: Optional[SQLConnection] = None


@dataclass
class PipelineResult:
    payload: Dict[str, Any]
    steps: Dict[str, str] = field(default_factory=dict)


_SERVICES: Optional[Services] = None


def build_services() -> Services:
    connection = SQLConnection()
    return Services(
        fetcher=SpotifyClient(),
        rate_limiter=RateLimiter(),
        duplicate_detector=DuplicateDetector(connection),
        roast_store=RoastStore(connection),
        metadata_store=PlaylistMetadataStore(connection),
        generator=RoastGenerator(),
        connection=connection,
    )


def get_services() -> Services:
    global _SERVICES
    if _SERVICES is None:
        _SERVICES = build_services()
    return _SERVICES


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    token = RUN_ID_VAR.set(uuid.uuid4().hex)
    method, path = get_route(event)
    log(
        "info",
        "invocation_start",
        method=method,
        path=path,
        aws_request_id=getattr(context, "aws_request_id", None),
        function_name=getattr(context, "function_name", None),
    )
    try:
        return process_event(event, get_services())
    except HTTPError as exc:
        log(
            "warning", "Handled HTTP error", status=exc.status_code, message=exc.message
        )
        return error_response(exc)
    except Exception as exc:  # pylint: disable=broad-except
        log("critical", "Unhandled exception", error=str(exc))
        return error_response(InternalError(ERROR_TEXT["general"]))
    finally:
        RUN_ID_VAR.reset(token)


def get_route(event: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    http_context = safe_get(event, "requestContext", "http")
    if isinstance(http_context, dict):
        return http_context.get("method"), event.get("rawPath") or http_context.get("path")
    return event.get("httpMethod"), event.get("path")


def process_event(event: Dict[str, Any], services: Services) -> Dict[str, Any]:
    method, path = get_route(event)
    method = (method or "").upper()
    normalized_path = (path or "").rstrip("/") or "/"

    if method == "OPTIONS":
        return build_response(200, None)

    if method == "POST" and normalized_path.endswith("/api/roast"):
        payload = parse_json_body(event)
        result = run_roast_pipeline(
            payload.get("playlist_url"),
            get_client_ip(event),
            services,
            display_name=payload.get("display_name"),
        )
        return success_response(result.payload)

    if method == "GET" and normalized_path.endswith("/api/roasts"):
        params = event.get("queryStringParameters") or {}
        return success_response(list_public_roasts(params, services))

    detail = ROAST_DETAIL_PATH.search(normalized_path)
    if method == "GET" and detail:
        return success_response({"roast": get_roast(detail.group(1), services)})

    if method == "GET" and normalized_path.endswith("/api/health"):
        return success_response(check_health(services))

    raise NotFoundError("route not found")


def parse_json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    body = event.get("body")
    if not body:
        return {}

    if event.get("isBase64Encoded"):
        try:
            body = base64.b64decode(body).decode("utf-8")
        except Exception as exc:  # pylint: disable=broad-except
            raise ValidationError("invalid base64 body") from exc

    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ValidationError("body must be valid JSON") from exc

    if not isinstance(data, dict):
        raise ValidationError("body must be a JSON object")
    return data


def get_client_ip(event: Dict[str, Any]) -> str:
    source_ip = safe_get(event, "requestContext", "identity", "sourceIp") or safe_get(
        event, "requestContext", "http", "sourceIp"
    )
    if source_ip:
        return source_ip
    headers = {
        k.lower(): v
        for k, v in (event.get("headers") or {}).items()
        if isinstance(k, str) and isinstance(v, str)
    }
    forwarded = headers.get("x-forwarded-for", "").split(",")[0].strip()
    return forwarded or headers.get("x-real-ip") or "unknown"


def _clean_display_name(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()[:MAX_DISPLAY_NAME_LENGTH]
    return cleaned or None


def format_roast_date(value: Any) -> str:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    if not isinstance(value, datetime):
        return str(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    local = value.astimezone(ZoneInfo(ENV_CONFIG["display_timezone"]))
    return f"{local:%B} {local.day}, {local:%Y} at {local:%I:%M %p}"


def _isoformat(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return value


def record_step(steps: Dict[str, str], name: str, degraded_reason: Optional[str]) -> None:
    if degraded_reason is None:
        steps[name] = "ok"
        return
    steps[name] = f"degraded: {degraded_reason}"
    log("warning", "pipeline_step_degraded", step=name, reason=degraded_reason)


def run_roast_pipeline(
    playlist_url: Any,
    client_ip: str,
    services: Services,
    display_name: Any = None,
) -> PipelineResult:
    """Validate, fetch, analyse, roast and store one playlist submission.

    The rate limit and a confirmed duplicate are hard gates. Duplicate lookup
    errors, storage, usage accounting and the final quota re-check only
    degrade the response; their outcomes are collected in ``steps``.
    """
    steps: Dict[str, str] = {}
    limiter = services.rate_limiter

    rate_check = limiter.check_daily_limit(client_ip)
    record_step(steps, "rate_limit_check", rate_check.degraded_reason)
    if not rate_check.allowed:
        raise RateLimitError(
            f"Rate limit exceeded. You can make {limiter.daily_limit} requests per "
            "day. Try again tomorrow.",
            {"remaining": rate_check.remaining},
        )

    if not playlist_url:
        raise ValidationError(ERROR_TEXT["missing_url"])
    validation = validate_playlist_url(playlist_url)
    if not validation.is_valid:
        raise ValidationError(validation.error or ERROR_TEXT["invalid_url"])
    playlist_id = validation.playlist_id

    playlist = services.fetcher.fetch_playlist_data(playlist_id)

    duplicate = services.duplicate_detector.check_for_duplicate(playlist.name, playlist_id)
    record_step(steps, "duplicate_check", duplicate.degraded_reason)
    if duplicate.is_duplicate:
        log(
            "info",
            "duplicate_playlist_rejected",
            playlist_id=playlist_id,
            original_roast_id=duplicate.roast_id,
        )
        raise ConflictError(
            ERROR_TEXT["duplicate"],
            {
                "duplicate_detected": True,
                "playlist_name": duplicate.playlist_name,
                "original_roast_date": format_roast_date(duplicate.original_roast_date),
                "message": "Duplicate playlist submission detected",
                "suggestion": "Try submitting a different playlist that hasn't been "
                "roasted before",
            },
        )

    analysis = analyze(playlist)
    roast = services.generator.generate(analysis)
    record_step(steps, "roast_generation", roast.degraded_reason)

    metadata = build_playlist_metadata(
        analysis, playlist.name, playlist.owner, playlist.description
    )
    saved = services.roast_store.save_roast(
        playlist_spotify_id=playlist_id,
        user_ip_address=client_ip,
        roast_text=roast.text,
        playlist_metadata=metadata,
        user_display_name=_clean_display_name(display_name) or playlist.owner,
    )
    record_step(steps, "persist", None if saved.success else saved.error or "not saved")
    if saved.success:
        stored = services.metadata_store.save_playlist_metadata(metadata, playlist_id)
        record_step(steps, "playlist_metadata", None if stored else "not saved")

    incremented = limiter.increment_usage(client_ip)
    record_step(steps, "increment_usage", None if incremented else "increment failed")

    updated = limiter.check_daily_limit(client_ip)
    record_step(steps, "rate_limit_recheck", updated.degraded_reason)
    if updated.degraded_reason is None:
        remaining = updated.remaining
    else:
        remaining = max(0, rate_check.remaining - 1)

    log(
        "info",
        "roast_pipeline_complete",
        playlist_id=playlist_id,
        roast_id=saved.roast_id,
        roast_source=roast.source,
        steps=steps,
    )

    payload = {
        "roast": {
            "playlist_name": playlist.name,
            "track_count": playlist.track_count,
            "roast_text": roast.text,
            "created_at": datetime.now(timezone.utc).isoformat(),
        },
        "insights": {
            "avgPopularity": analysis.avg_popularity,
            "localMusicCount": analysis.local_music_count,
            "topArtist": analysis.top_artist,
            "isMainstream": analysis.is_very_mainstream,
            "culturalDiversity": get_cultural_diversity(analysis),
            "roastingAngles": generate_roasting_angles(analysis),
        },
        "rate_limit": {"remaining": remaining, "limit": limiter.daily_limit},
    }
    return PipelineResult(payload, steps)


def parse_pagination(params: Dict[str, Any]) -> Tuple[int, int]:
    try:
        page = int(params.get("page") or 1)
        limit = int(params.get("limit") or DEFAULT_FEED_LIMIT)
    except (TypeError, ValueError) as exc:
        raise ValidationError(PAGINATION_ERROR) from exc
    if page < 1 or limit < 1 or limit > MAX_FEED_LIMIT:
        raise ValidationError(PAGINATION_ERROR)
    return page, limit


def present_roast(record: Dict[str, Any]) -> Dict[str, Any]:
    metadata = record.get("playlist_metadata") or {}
    return {
        "roast_id": record["roast_id"],
        "roast_text": record["roast_text"],
        "created_at": _isoformat(record["generated_at"]),
        "user_display_name": record.get("user_display_name") or "Anonymous",
        "playlist_name": metadata.get("name") or "Unknown Playlist",
        "track_count": metadata.get("track_count") or 0,
        "playlist_spotify_id": record["playlist_spotify_id"],
    }


def list_public_roasts(params: Dict[str, Any], services: Services) -> Dict[str, Any]:
    page, limit = parse_pagination(params)
    feed = services.roast_store.get_public_roast_feed(page, limit)
    if feed.degraded_reason:
        log("warning", "Serving empty roast feed", reason=feed.degraded_reason)
    total = feed.total_count
    return {
        "roasts": [present_roast(record) for record in feed.roasts],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit),
            "hasNext": page * limit < total,
            "hasPrev": page > 1,
        },
    }


def get_roast(roast_id: str, services: Services) -> Dict[str, Any]:
    record = services.roast_store.get_roast_by_id(roast_id)
    if record is None:
        raise NotFoundError("roast not found")
    return present_roast(record)


def check_health(services: Services) -> Dict[str, Any]:
    if not services.roast_store.enabled or services.connection is None:
        return {"database": "disabled"}
    healthy = services.connection.health_check()
    return {"database": "ok" if healthy else "unavailable"}
