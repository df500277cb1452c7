"""
Per-token event subscriptions

Sessions and monitors publish lifecycle and trade events here; the CLI and
any other observer subscribe by token mint.

Usage:
    unsubscribe = bus.subscribe(mint, handler)
    bus.publish(EventType.TRADE_EXECUTED, mint, {...})
    unsubscribe()
"""

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List

logger = logging.getLogger("volume_bot.events")


class EventType(Enum):
    # Session lifecycle
    SESSION_STARTED = "session_started"
    TRADE_EXECUTED = "trade_executed"
    TRADE_FAILED = "trade_failed"
    SESSION_STOPPED = "session_stopped"
    EMERGENCY_STOP = "emergency_stop"
    STATUS_UPDATE = "status_update"
    ERROR = "error"

    # Smart profit
    MONITOR_STARTED = "monitor_started"
    MONITOR_STOPPED = "monitor_stopped"
    RULE_TRIGGERED = "rule_triggered"
    EXECUTION_FAILED = "execution_failed"


@dataclass
class BotEvent:
    event_type: EventType
    token_mint: str
    data: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Handler = Callable[[BotEvent], None]

# Subscribers for every token
ALL_TOKENS = "*"


class EventBus:
    """Synchronous fan-out to subscribers; a failing handler never breaks the publisher."""

    def __init__(self, history_size: int = 200):
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)
        self.history: Deque[BotEvent] = deque(maxlen=history_size)

    def subscribe(self, token_mint: str, handler: Handler) -> Callable[[], None]:
        self._subscribers[token_mint].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(token_mint)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self._subscribers[token_mint]

        return unsubscribe

    def publish(self, event_type: EventType, token_mint: str, data: dict = None) -> BotEvent:
        event = BotEvent(event_type=event_type, token_mint=token_mint, data=data or {})
        self.history.append(event)

        handlers = list(self._subscribers.get(token_mint, ())) + list(self._subscribers.get(ALL_TOKENS, ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s on %s", event_type.value, token_mint[:8])
        return event

    def recent(self, token_mint: str = None, event_type: EventType = None) -> List[BotEvent]:
        return [
            e for e in self.history
            if (token_mint is None or e.token_mint == token_mint)
            and (event_type is None or e.event_type is event_type)
        ]

    def subscriber_count(self, token_mint: str) -> int:
        return len(self._subscribers.get(token_mint, ()))
