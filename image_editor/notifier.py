from typing import Any, Dict, Optional, Protocol

from loguru import logger


class Notifier(Protocol):
    def capture(self, event: str, properties: Optional[Dict[str, Any]] = None) -> None:
        ...


class NullNotifier:
    """Drops every event"""

    def capture(self, event: str, properties: Optional[Dict[str, Any]] = None) -> None:
        return None


class LoggingNotifier:
    """Writes analytics events to the log instead of an analytics service"""

    def __init__(self):
        self.logger = logger.bind(analytics=True)

    def capture(self, event: str, properties: Optional[Dict[str, Any]] = None) -> None:
        self.logger.info(f"analytics event={event} properties={properties or {}}")
