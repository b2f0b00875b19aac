from __future__ import annotations

from dataclasses import dataclass
from typing import Final

LABEL_MAX_CHARS: Final = 512


@dataclass(frozen=True)
class DisplayRecord:
    """One ready-to-render image entry of the published display set."""

    image_url: str
    manifest_url: str
    related_url: str
    label: str

    def __post_init__(self):
        # Characters, not bytes: slicing a str never splits a code point.
        if len(self.label) > LABEL_MAX_CHARS:
            object.__setattr__(self, "label", self.label[:LABEL_MAX_CHARS])
