from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class MarkerSet:
    """Literal sentinel strings shared by the prompt builder and the scanner."""

    call_open: str = "<CALL_WEATHER>"
    call_close: str = "</CALL_WEATHER>"
    result_open: str = "<WEATHER_RESULT>"
    result_close: str = "</WEATHER_RESULT>"

    def __post_init__(self) -> None:
        values = self.as_tuple()
        if any(not value for value in values):
            raise ValueError("markers must be non-empty")
        if len(set(values)) != len(values):
            raise ValueError("markers must be pairwise distinct")
        for idx, value in enumerate(values):
            for other_idx, other in enumerate(values):
                if idx != other_idx and value in other:
                    raise ValueError(f"marker {value!r} overlaps {other!r}")

    def as_tuple(self) -> Tuple[str, str, str, str]:
        return (self.call_open, self.call_close, self.result_open, self.result_close)

    @property
    def max_marker_length(self) -> int:
        # Result markers only appear in prompts we build, never in scanned output.
        return max(len(self.call_open), len(self.call_close))


DEFAULT_MARKERS = MarkerSet()
