"""Message envelopes exchanged between the queue controller and the page agent.

Every message carries a ``type`` discriminator using the hyphenated wire
names so envelopes can be logged or forwarded as JSON unchanged.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class MessageType(str, Enum):
    """Message kinds crossing the controller/agent boundary."""

    START_AUTOMATION = "start-automation"
    STOP_AUTOMATION = "stop-automation"
    PAUSE_AUTOMATION = "pause-automation"
    RESUME_AUTOMATION = "resume-automation"
    EXECUTE_PROMPT = "execute-prompt"
    PROMPT_COMPLETED = "prompt-completed"
    PROMPT_FAILED = "prompt-failed"
    CONTENT_SCRIPT_READY = "content-script-ready"


def _now_ms() -> int:
    return int(time.time() * 1000)


class DispatchEnvelope(BaseModel):
    """``execute-prompt``: one prompt handed to the agent."""

    type: Literal["execute-prompt"] = "execute-prompt"
    prompt_text: str
    index: int
    per_attempt_timeout_ms: int
    automation_id: int


class OutcomeEnvelope(BaseModel):
    """``prompt-completed`` / ``prompt-failed``: the agent's report for one dispatch."""

    type: Literal["prompt-completed", "prompt-failed"]
    index: int
    success: bool
    response_text: str = ""
    error_message: str = ""
    error_kind: str = ""
    start_time: int = 0
    timestamp: int = Field(default_factory=_now_ms)
    automation_id: int | None = None

    @classmethod
    def completed(
        cls,
        index: int,
        response_text: str,
        *,
        start_time: int,
        automation_id: int | None = None,
    ) -> OutcomeEnvelope:
        """Build a success outcome."""
        return cls(
            type=MessageType.PROMPT_COMPLETED.value,
            index=index,
            success=True,
            response_text=response_text,
            start_time=start_time,
            automation_id=automation_id,
        )

    @classmethod
    def failed(
        cls,
        index: int,
        error_message: str,
        *,
        error_kind: str = "",
        start_time: int = 0,
        automation_id: int | None = None,
    ) -> OutcomeEnvelope:
        """Build a failure outcome."""
        return cls(
            type=MessageType.PROMPT_FAILED.value,
            index=index,
            success=False,
            error_message=error_message,
            error_kind=error_kind,
            start_time=start_time,
            automation_id=automation_id,
        )


class ControlMessage(BaseModel):
    """Payload-free control messages (stop/pause/resume/ready)."""

    type: Literal[
        "stop-automation",
        "pause-automation",
        "resume-automation",
        "content-script-ready",
    ]
    target_id: str = ""


class StartMessage(BaseModel):
    """``start-automation``: prompts plus the target to run them against."""

    type: Literal["start-automation"] = "start-automation"
    prompts: list[dict[str, Any]] | list[str]
    target_id: str


Message = Annotated[
    Union[DispatchEnvelope, OutcomeEnvelope, ControlMessage, StartMessage],
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER: TypeAdapter[Any] = TypeAdapter(Message)


def parse_message(data: dict[str, Any] | str | bytes) -> DispatchEnvelope | OutcomeEnvelope | ControlMessage | StartMessage:
    """Validate a raw message (dict or JSON) into its envelope type.

    Raises:
        pydantic.ValidationError: If the payload is not a known message.
    """
    if isinstance(data, (str, bytes)):
        return _MESSAGE_ADAPTER.validate_json(data)
    return _MESSAGE_ADAPTER.validate_python(data)
