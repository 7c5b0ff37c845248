# services/caption_generator.py
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

DEFAULT_PLATFORMS = [
    "instagram",
    "tiktok",
    "youtube_shorts",
    "youtube_long",
    "facebook",
    "linkedin",
    "x",
    "pinterest",
    "snapchat",
]


@dataclass(frozen=True)
class GeneratedCaption:
    platform: str
    caption: str
    hashtags: List[str] = field(default_factory=list)


class CaptionGenerator(Protocol):
    """The generation model itself lives outside this service; it is injected at startup."""

    def generate(
        self,
        content_type: str,
        content_description: str,
        platforms: List[str],
    ) -> List[GeneratedCaption]: ...


def resolve_platforms(requested: Optional[List[str]], max_platforms: Optional[int]) -> List[str]:
    """Requested platforms (deduplicated, in order) or the defaults, capped by the tier."""
    if requested:
        platforms = list(dict.fromkeys(p.strip().lower() for p in requested if p and p.strip()))
    else:
        platforms = list(DEFAULT_PLATFORMS)
        if max_platforms is not None:
            platforms = platforms[:max_platforms]
    return platforms
