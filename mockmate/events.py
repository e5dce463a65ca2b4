"""Events pushed to clients over SSE.

Two families share the wire: conversational stream events (one per interview
turn fragment) and coarse progress events for one-shot jobs. Each event kind
is its own dataclass carrying only the fields that kind needs; ``to_dict``
renders the camelCase JSON object with a ``type`` tag and drops unset fields.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Dict, Optional


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.title() for p in rest)


class _Event:
    type: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        for f in fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, dict) and not value:
                continue
            out[_camel(f.name)] = value
        return out


# ----- conversational stream events -----

@dataclass
class StartEvent(_Event):
    type: ClassVar[str] = "start"
    session_id: str
    result_id: str
    content: str
    is_streaming: bool
    question_number: int = 0
    total_questions: Optional[int] = None
    elapsed_minutes: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QuestionEvent(_Event):
    type: ClassVar[str] = "question"
    session_id: str
    content: str
    is_streaming: bool
    question_number: int
    total_questions: Optional[int] = None
    elapsed_minutes: Optional[int] = None


@dataclass
class ReferenceAnswerEvent(_Event):
    type: ClassVar[str] = "reference_answer"
    session_id: str
    content: str
    is_streaming: bool
    question_number: int


@dataclass
class ThinkingEvent(_Event):
    type: ClassVar[str] = "thinking"
    session_id: str
    content: Optional[str] = None


@dataclass
class WaitingEvent(_Event):
    type: ClassVar[str] = "waiting"
    session_id: str


@dataclass
class EndEvent(_Event):
    type: ClassVar[str] = "end"
    session_id: str
    result_id: Optional[str]
    content: Optional[str] = None
    elapsed_minutes: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ErrorEvent(_Event):
    type: ClassVar[str] = "error"
    error: str
    session_id: Optional[str] = None
    result_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


# ----- progress events (one-shot jobs) -----

PROGRESS_STAGES = ("prepare", "generating", "saving", "done")


@dataclass
class ProgressEvent(_Event):
    type: ClassVar[str] = "progress"
    progress: int
    label: str
    stage: str


@dataclass
class CompleteEvent(_Event):
    type: ClassVar[str] = "complete"
    label: str
    data: Dict[str, Any]
    progress: int = 100
    stage: str = "done"


@dataclass
class ProgressErrorEvent(_Event):
    type: ClassVar[str] = "error"
    progress: int
    label: str
    error: str
    stage: Optional[str] = None


def sse_data_event(text: str) -> str:
    """
    Encode text as a well-formed SSE data event.
    Splits on newlines and prefixes each with 'data: ', ending with a blank line.
    """
    lines = str(text).splitlines()
    if not lines:
        return "data: \n\n"
    return "".join(f"data: {line}\n" for line in lines) + "\n"


def encode_event(event: _Event) -> str:
    return sse_data_event(json.dumps(event.to_dict(), ensure_ascii=False))
