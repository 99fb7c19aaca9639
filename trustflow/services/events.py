"""In-process publication of verification events.

The core publishes ``VerificationEvent`` objects here instead of calling any
presentation code; UI layers subscribe and render them however they like.
"""

import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from trustflow.schemas.verification import VerificationEvent, VerificationEventKind
from trustflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

Subscriber = Callable[[VerificationEvent], Union[None, Awaitable[None]]]


class VerificationEventPublisher:
    """Fan-out of events to registered subscribers.

    A failing subscriber is logged and skipped; it never affects the
    operation that emitted the event or the other subscribers.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber`` and return a callable that removes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    async def publish(
        self,
        kind: VerificationEventKind,
        company_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> VerificationEvent:
        event = VerificationEvent(kind=kind, company_id=company_id, payload=payload or {})
        for subscriber in list(self._subscribers):
            try:
                outcome = subscriber(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                LOGGER.error(
                    f"Event subscriber failed for {kind.value}: {e}",
                    exc_info=True,
                    extra={"company_id": company_id},
                )
        return event
