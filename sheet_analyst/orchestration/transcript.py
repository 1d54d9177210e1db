# sheet_analyst/orchestration/transcript.py

import enum
import itertools
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Union

from sheet_analyst.analysis.visualize import Visualization


class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class VisualizationContent:
    """A report with an attached chart/table descriptor."""

    report: str
    visualization: Visualization
    query: Optional[str] = None


Content = Union[TextContent, VisualizationContent]


@dataclass(frozen=True)
class Message:
    id: int
    role: Role
    content: Content

    @property
    def text(self) -> str:
        if isinstance(self.content, VisualizationContent):
            return self.content.report
        return self.content.text


class Transcript:
    """
    Append-only message log for one session.

    Ids keep increasing across clear() so a message id is never reused.
    """

    def __init__(self) -> None:
        self._messages: List[Message] = []
        self._ids = itertools.count(1)

    def append(self, role: Role, content: Content) -> Message:
        msg = Message(id=next(self._ids), role=role, content=content)
        self._messages.append(msg)
        return msg

    def clear(self) -> None:
        self._messages.clear()

    def history(self) -> List[Dict[str, Any]]:
        """
        Turns in the shape the clarification prompt expects: role is `user`
        or `system`, assistant replies are sent as `system`.
        """
        return [
            {"role": "user" if m.role is Role.USER else "system", "content": m.text}
            for m in self._messages
        ]

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, idx: int) -> Message:
        return self._messages[idx]
