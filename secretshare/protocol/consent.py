import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Protocol

from secretshare.log import get_logger

logger = get_logger(__name__)

_SIZE_UNITS = "KMGTPE"


def format_file_size(size: int) -> str:
    """Format a byte count as a human-readable size, e.g. ``1.5 KB``."""
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit and exp < len(_SIZE_UNITS) - 1:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {_SIZE_UNITS[exp]}B"


class PromptKind(Enum):
    IDENTITY = "identity"
    FILE = "file"


@dataclass(frozen=True)
class ConsentPrompt:
    kind: PromptKind
    message: str
    question: str
    label: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None

    @classmethod
    def identity(cls, label: str) -> "ConsentPrompt":
        return cls(
            kind=PromptKind.IDENTITY,
            message=f"Incoming connection from GPG user: {label}",
            question="Accept connection?",
            label=label,
        )

    @classmethod
    def file(cls, file_name: str, size: int) -> "ConsentPrompt":
        return cls(
            kind=PromptKind.FILE,
            message=f"Incoming file: {file_name} ({format_file_size(size)})",
            question="Download this file?",
            file_name=file_name,
            file_size=size,
        )


class ConsentGate(Protocol):
    """Asks the local operator a yes/no question. Must return False on any failure."""

    def ask(self, prompt: ConsentPrompt) -> bool:
        ...


class TerminalConsent:
    """Consent gate reading the answer from the controlling terminal."""

    # one prompt at a time, whichever stream worker is asking
    _lock = threading.Lock()

    def __init__(self, input_func=input, output_func=print):
        self._input = input_func
        self._output = output_func

    def ask(self, prompt: ConsentPrompt) -> bool:
        with self._lock:
            try:
                self._output(f"\n{prompt.message}")
                response = self._input(f"{prompt.question} (y/N): ")
            except (EOFError, OSError, UnicodeDecodeError) as e:
                logger.error(f"Failed to read user input: {e}")
                return False
        response = response.strip().lower()
        return response in ("y", "yes")


class ScriptedConsent:
    """
    Consent gate answering from a fixed script, one answer per prompt.

    Once the script runs out every further prompt is declined.
    """

    def __init__(self, answers: Iterable[bool]):
        self._answers = list(answers)
        self.prompts: List[ConsentPrompt] = []

    def ask(self, prompt: ConsentPrompt) -> bool:
        self.prompts.append(prompt)
        if not self._answers:
            return False
        return bool(self._answers.pop(0))
