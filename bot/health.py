import logging
from dataclasses import dataclass
from typing import Optional

from bot.utils import compute_backoff, sleep_with_log
from execution.errors import ApiError
from execution.stockfighter_adapter import StockfighterClient, Venue


@dataclass
class HealthStatus:
    healthy: bool
    message: str
    api_ok: bool = False
    venue_ok: bool = False
    venue: Optional[str] = None


def _probe_venue(venue: Venue, attempts: int, backoff_base: float, logger: logging.Logger) -> Optional[str]:
    """Returns None when the venue answers its heartbeat, otherwise the last error."""
    error = "venue heartbeat not attempted"
    for attempt in range(1, attempts + 1):
        try:
            beat = venue.heartbeat()
            if beat.ok:
                return None
            error = f"venue {venue.name} reported not ok"
        except ApiError as exc:
            error = str(exc)
        if attempt < attempts:
            sleep_with_log(logger, f"Venue heartbeat retry for {venue.name}", compute_backoff(backoff_base, attempt))
    return error


def check_api_health(client: StockfighterClient, venue: Venue, logger: logging.Logger) -> HealthStatus:
    """Probe the API heartbeat, then the venue heartbeat, before any order goes out."""
    api = client.heartbeat()
    if not api.ok:
        logger.error(
            "Stockfighter API heartbeat failed",
            extra={"details": {"base_url": client.config.base_url, "error": api.error}},
        )
        return HealthStatus(False, f"API down: {api.error}", venue=venue.name)

    error = _probe_venue(venue, max(client.config.max_retries, 1), client.config.backoff_base, logger)
    if error is not None:
        logger.error(
            "Venue heartbeat failed",
            extra={"details": {"venue": venue.name, "account": venue.account, "error": error}},
        )
        return HealthStatus(False, f"Venue {venue.name} down: {error}", api_ok=True, venue=venue.name)

    logger.info("API and venue healthy", extra={"details": {"venue": venue.name}})
    return HealthStatus(True, "API and venue healthy.", api_ok=True, venue_ok=True, venue=venue.name)
