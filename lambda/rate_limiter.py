import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import boto3
from boto3.dynamodb.conditions import Key

from runtime import ENV_CONFIG, log

WINDOW_SECONDS = 24 * 60 * 60
DISABLED_REMAINING = 999


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    degraded_reason: Optional[str] = None


class RateLimiter:
    """Per-client daily quota stored as one DynamoDB item per admitted request.

    Items are keyed by ``ip_address`` (partition) and ``request_timestamp`` in
    epoch milliseconds (sort). ``expiration_time`` is the table's TTL
    attribute, so stale entries disappear on their own; the query window
    filters out anything DynamoDB has not yet reaped.

    Checking and incrementing are separate calls, so two concurrent requests
    from one client can both be admitted with one slot left.
    """

    def __init__(
        self,
        table: Any = None,
        enabled: Optional[bool] = None,
        daily_limit: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._table = table
        self.enabled = ENV_CONFIG["rate_limiting_enabled"] if enabled is None else enabled
        self.daily_limit = (
            ENV_CONFIG["rate_limit_per_day"] if daily_limit is None else daily_limit
        )
        self._clock = clock
        log(
            "info",
            "rate_limiter_configured",
            enabled=self.enabled,
            daily_limit=self.daily_limit,
        )

    @property
    def table(self) -> Any:
        if self._table is None:
            self._table = boto3.resource("dynamodb").Table(ENV_CONFIG["rate_limit_table"])
        return self._table

    def count_recent_requests(self, client_id: str) -> int:
        since_ms = int((self._clock() - WINDOW_SECONDS) * 1000)
        query_kwargs: Dict[str, Any] = {
            "KeyConditionExpression": Key("ip_address").eq(client_id)
            & Key("request_timestamp").gt(since_ms),
            "Select": "COUNT",
        }
        total = 0
        while True:
            response = self.table.query(**query_kwargs)
            total += int(response.get("Count", 0))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            query_kwargs["ExclusiveStartKey"] = last_key
        return total

    def check_daily_limit(self, client_id: str) -> RateLimitResult:
        if not self.enabled:
            return RateLimitResult(True, DISABLED_REMAINING)

        try:
            count = self.count_recent_requests(client_id)
        except Exception as exc:  # pylint: disable=broad-except
            log(
                "warning",
                "Rate limit check failed, allowing request",
                client_id=client_id,
                error=str(exc),
            )
            return RateLimitResult(True, self.daily_limit, f"check_failed: {exc}")

        remaining = max(0, self.daily_limit - count)
        log(
            "info",
            "rate_limit_check",
            client_id=client_id,
            count=count,
            daily_limit=self.daily_limit,
            remaining=remaining,
        )
        return RateLimitResult(count < self.daily_limit, remaining)

    def increment_usage(self, client_id: str) -> bool:
        if not self.enabled:
            return True

        now = self._clock()
        item = {
            "ip_address": client_id,
            "request_timestamp": int(now * 1000),
            "expiration_time": int(now) + WINDOW_SECONDS,
        }
        try:
            self.table.put_item(Item=item)
        except Exception as exc:  # pylint: disable=broad-except
            log(
                "warning",
                "Failed to increment rate limit usage",
                client_id=client_id,
                error=str(exc),
            )
            return False
        return True
