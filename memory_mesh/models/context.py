"""
Request-scoped context passed down the call chain instead of global state.
"""

import threading
import uuid
from dataclasses import dataclass, field
from typing import Optional

from ..utils.errors import QueryCancelledError


@dataclass
class RequestContext:
    """Correlation ids and cancellation for one search request or ingestion job."""
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: Optional[str] = None
    job_id: Optional[str] = None
    attempt: int = 1
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise QueryCancelledError once the request has been superseded."""
        if self.cancel_event.is_set():
            raise QueryCancelledError(f'Request {self.request_id} was cancelled')
