from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class JobSpec:
    """What a caller asks to generate. The payload is opaque to the queue."""

    message_id: str
    conversation_id: str
    owner_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    max_retries: Optional[int] = None
