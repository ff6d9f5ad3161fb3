from __future__ import annotations

import re
from typing import List, Optional

from .models import ImageContent, ManualContent

IMAGE_MARKER_RE = re.compile(r"\[image (\d+)\]")


def resolve_images(text: str, manual: Optional[ManualContent]) -> List[ImageContent]:
    """Purpose: Map "[image N]" markers in model output to manual images.
    Inputs/Outputs: Input is model text and the loaded manual; output is the
        referenced images in first-mention order.
    Side Effects / State: None; pure function.
    Dependencies: Uses IMAGE_MARKER_RE; called by the conversation engine.
    Failure Modes: Out-of-range or zero markers are skipped silently.
    If Removed: Answers show [image N] markers without the pictures.
    Testing Notes: Repeated markers for one image must yield a single entry.
    """
    # N is 1-based; duplicates are dropped by src.
    if not text or manual is None or not manual.images:
        return []
    resolved: List[ImageContent] = []
    seen = set()
    for match in IMAGE_MARKER_RE.finditer(text):
        index = int(match.group(1)) - 1
        if index < 0 or index >= len(manual.images):
            continue
        image = manual.images[index]
        if image.src in seen:
            continue
        seen.add(image.src)
        resolved.append(image)
    return resolved
