import json
import logging
import os
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv


DEFAULT_BASE_URL = "https://api.stockfighter.io/ob/api"
DEFAULT_WS_URL = "wss://api.stockfighter.io/ob/api/ws"


@dataclass
class StockfighterConfig:
    api_key: str
    base_url: str = DEFAULT_BASE_URL
    ws_url: str = DEFAULT_WS_URL
    account: str = ""
    venue: str = ""
    symbol: str = ""
    state_file: Optional[Path] = None
    max_retries: int = 3
    backoff_base: float = 0.5
    timeout_seconds: float = 10.0


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "details": dict(getattr(record, "details", {})),
        }
        if record.exc_info:
            payload["details"]["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(log_file: str = "logs/bot.log", level: Optional[str] = None) -> logging.Logger:
    """Attach JSON file + console handlers to the root logger once.

    Every component logs through its own named logger, so configuring the
    root is enough to capture the engine, adapter and feeds together.
    """
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    if not root.handlers:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(JsonFormatter())
        root.addHandler(stream_handler)
    return logging.getLogger("stockfighter_bot")


def read_key_file(path: str) -> str:
    """Reads an API key from a file kept out of source control."""
    key_path = Path(path).expanduser()
    try:
        key = key_path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ValueError(f"Can't read key file {key_path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ValueError(f"Key file {key_path} is not valid UTF-8") from exc
    if not key:
        raise ValueError(f"Key file {key_path} is empty")
    return key


def load_config() -> StockfighterConfig:
    load_dotenv()
    api_key = os.getenv("STOCKFIGHTER_API_KEY", "").strip()
    key_file = os.getenv("STOCKFIGHTER_KEY_FILE", "").strip()
    if not api_key and not key_file:
        raise ValueError("Missing required environment keys: STOCKFIGHTER_API_KEY or STOCKFIGHTER_KEY_FILE")
    if not api_key:
        api_key = read_key_file(key_file)

    state_file = os.getenv("STOCKFIGHTER_STATE_FILE", "").strip()

    return StockfighterConfig(
        api_key=api_key,
        base_url=os.getenv("STOCKFIGHTER_BASE_URL", DEFAULT_BASE_URL).strip().rstrip("/"),
        ws_url=os.getenv("STOCKFIGHTER_WS_URL", DEFAULT_WS_URL).strip().rstrip("/"),
        account=os.getenv("STOCKFIGHTER_ACCOUNT", "").strip(),
        venue=os.getenv("STOCKFIGHTER_VENUE", "").strip(),
        symbol=os.getenv("STOCKFIGHTER_SYMBOL", "").strip(),
        state_file=Path(state_file) if state_file else None,
        max_retries=int(os.getenv("STOCKFIGHTER_MAX_RETRIES", "3")),
        backoff_base=float(os.getenv("STOCKFIGHTER_BACKOFF_BASE", "0.5")),
        timeout_seconds=float(os.getenv("STOCKFIGHTER_HTTP_TIMEOUT", "10")),
    )


def compute_backoff(base_seconds: float, attempt: int, cap: float = 30.0) -> float:
    jitter = random.uniform(0, 0.3 * base_seconds)
    delay = min(cap, (base_seconds * (2 ** max(attempt - 1, 0))) + jitter)
    return delay


def sleep_with_log(logger: logging.Logger, reason: str, seconds: float) -> None:
    logger.warning(
        f"Sleeping for cooldown: {seconds:.2f}s",
        extra={"details": {"reason": reason, "seconds": seconds}},
    )
    time.sleep(seconds)
