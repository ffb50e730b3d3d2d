"""Shared data types for the chat-completion client."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Union


# ---------------------------------------------------------------------------
# Message model
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Conversation roles understood by chat-completion APIs."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


_DETAILS = ("high", "low", "auto")


@dataclass(frozen=True)
class TextPart:
    """Plain text part.  ``cache_control`` marks long, reusable context."""

    text: str
    cache_control: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": "text", "text": self.text}
        if self.cache_control:
            data["cache_control"] = {"type": "ephemeral"}
        return data


@dataclass(frozen=True)
class _MediaPart:
    url: str
    detail: str = "auto"

    kind = ""

    def __post_init__(self) -> None:
        if self.detail not in _DETAILS:
            raise ValueError(f"detail must be one of {_DETAILS}, got {self.detail!r}")

    def to_dict(self) -> dict[str, Any]:
        key = f"{self.kind}_url"
        return {"type": key, key: {"url": self.url, "detail": self.detail}}


@dataclass(frozen=True)
class ImagePart(_MediaPart):
    kind = "image"


@dataclass(frozen=True)
class VideoPart(_MediaPart):
    kind = "video"


@dataclass(frozen=True)
class AudioPart(_MediaPart):
    kind = "audio"


ContentPart = Union[TextPart, ImagePart, VideoPart, AudioPart]

_MEDIA_TYPES: dict[str, type[_MediaPart]] = {
    "image_url": ImagePart,
    "video_url": VideoPart,
    "audio_url": AudioPart,
}


def part_from_dict(raw: dict[str, Any]) -> ContentPart:
    """Parse one wire-format content part."""
    kind = raw.get("type")
    if kind == "text":
        return TextPart(text=raw.get("text", ""), cache_control="cache_control" in raw)
    if kind in _MEDIA_TYPES:
        ref = raw.get(kind) or {}
        return _MEDIA_TYPES[kind](url=ref.get("url", ""), detail=ref.get("detail", "auto"))
    raise ValueError(f"Unknown content part type: {kind!r}")


@dataclass(frozen=True)
class Message:
    """One conversation turn.

    ``content`` is either a single string or an ordered list of parts.
    Instances are never modified once built; transformations return copies.
    """

    role: Role
    content: str | list[ContentPart]

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))

    @property
    def has_media(self) -> bool:
        if isinstance(self.content, str):
            return False
        return any(isinstance(p, _MediaPart) for p in self.content)

    @property
    def text(self) -> str:
        """Text content only, parts joined by newlines."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(p.text for p in self.content if isinstance(p, TextPart))

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            content: Any = self.content
        else:
            content = [p.to_dict() for p in self.content]
        return {"role": self.role.value, "content": content}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        content = raw.get("content", "")
        if isinstance(content, list):
            content = [part_from_dict(p) for p in content]
        return cls(role=Role(raw["role"]), content=content)

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str | list[ContentPart]) -> Message:
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(Role.ASSISTANT, content)


@dataclass(frozen=True)
class FileAttachment:
    """Extracted text of a file the user attached to a turn."""

    name: str
    content: str


# ---------------------------------------------------------------------------
# Request options
# ---------------------------------------------------------------------------

WEB_SEARCH_PROMPT = (
    "Search for factual, verifiable information from multiple reputable "
    "sources, avoiding opinion, advocacy, or activist framing. Include diverse "
    "perspectives where relevant, and prioritize original reporting, primary "
    "data, and official statements."
)


@dataclass(frozen=True)
class Plugin:
    """Provider plugin request (only ``web`` search is known today)."""

    id: str = "web"
    max_results: int | None = None
    search_prompt: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id}
        if self.max_results is not None:
            data["max_results"] = self.max_results
        if self.search_prompt is not None:
            data["search_prompt"] = self.search_prompt
        return data


DEFAULT_WEB_PLUGIN = Plugin(id="web", max_results=1, search_prompt=WEB_SEARCH_PROMPT)


@dataclass
class RequestOptions:
    """Per-call options.  ``model=None`` means the configured default."""

    model: str | None = None
    temperature: float = 0.7
    max_tokens: int = 8192
    plugins: list[Plugin] | None = None
    stream: bool = True
    web_search: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.temperature <= 1:
            raise ValueError(f"temperature must be in [0, 1], got {self.temperature}")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")

    @property
    def wants_search(self) -> bool:
        return self.web_search or bool(self.plugins)

    def resolved_plugins(self, default: Plugin = DEFAULT_WEB_PLUGIN) -> list[Plugin]:
        if self.plugins:
            return list(self.plugins)
        if self.web_search:
            return [default]
        return []


# ---------------------------------------------------------------------------
# Per-call state
# ---------------------------------------------------------------------------

@dataclass
class StreamState:
    """State of one streaming attempt.  Never shared between attempts."""

    buffer: str = ""
    answer: str = ""
    reasoning: str = ""
    completed: bool = False
    aborted: bool = False
    frames: int = 0
    stray_lines: int = 0


@dataclass
class RetryState:
    """State of one logical call across its physical attempts."""

    attempt: int = 0
    last_error: Exception | None = None
    downgraded: bool = False


# ---------------------------------------------------------------------------
# Stream events and callbacks
# ---------------------------------------------------------------------------

class EventKind(enum.Enum):
    ANSWER = "answer"
    REASONING = "reasoning"
    DONE = "done"


@dataclass(frozen=True)
class StreamEvent:
    kind: EventKind
    text: str = ""


@dataclass(frozen=True)
class FrameDelta:
    """Answer and reasoning text carried by one decoded frame."""

    content: str = ""
    reasoning: str = ""
    finish_reason: str | None = None
    usage: dict[str, int] | None = None


@dataclass
class StreamCallbacks:
    """The UI-facing output contract of a streaming call.

    ``on_retry(attempt)`` fires before a retry attempt starts, so a UI can
    drop partial text shown for the failed attempt.
    """

    on_chunk: Callable[[str], Any]
    on_complete: Callable[[], Any]
    on_error: Callable[[Exception], Any]
    on_reasoning_chunk: Callable[[str], Any] | None = None
    on_retry: Callable[[int], Any] | None = None


@dataclass
class ChatResult:
    """Final outcome of a successful logical call."""

    content: str = ""
    reasoning: str = ""
    model: str = ""
    attempts: int = 1
    downgraded: bool = False
    usage: dict[str, int] = field(default_factory=dict)
