"""Extract embedded preview images from G-code.

Slicers store PNG previews as base64 inside G-code comments:

- PrusaSlicer / SuperSlicer: ``; thumbnail begin WxH len`` ... ``; thumbnail end``
- Cura (thumbnail plugin): ``;THUMBNAIL_BLOCK_START`` ... ``;THUMBNAIL_BLOCK_END``
- Snapmaker Luban: ``;thumbnail: data:image/png;base64,...``
"""

import re

# Shorter payloads are placeholders, not images
MIN_BASE64_LENGTH = 100

_BLOCK_RE = re.compile(
    r";\s*thumbnail begin (\d+)[xX](\d+)[^\n]*\n(.*?);\s*thumbnail end",
    re.IGNORECASE | re.DOTALL,
)
_CURA_RE = re.compile(
    r";\s*(?:THUMBNAIL_BLOCK_START|thumbnail_begin)[^\n]*\n(.*?);\s*(?:THUMBNAIL_BLOCK_END|thumbnail_end)",
    re.IGNORECASE | re.DOTALL,
)
_LUBAN_RE = re.compile(
    r";\s*thumbnail\s*:\s*data:image/[^;]+;base64,([A-Za-z0-9+/=\s]+)",
    re.IGNORECASE,
)


def _join_comment_lines(block: str, skip_comments: bool = False) -> str:
    lines = []
    for line in block.split("\n"):
        stripped = re.sub(r"^;\s*", "", line).strip()
        if not stripped:
            continue
        if skip_comments and stripped.startswith(";"):
            continue
        lines.append(stripped)
    return "".join(lines)


def _data_url(base64_data: str) -> str:
    return f"data:image/png;base64,{base64_data}"


def extract_thumbnail(gcode: str | None) -> str | None:
    """Return the largest embedded thumbnail as a data URL, or None."""
    if not gcode or not isinstance(gcode, str):
        return None

    # PrusaSlicer blocks; several sizes are common, keep the largest
    largest: tuple[int, str] | None = None
    for match in _BLOCK_RE.finditer(gcode):
        width, height = int(match.group(1)), int(match.group(2))
        data = _join_comment_lines(match.group(3))
        if len(data) <= MIN_BASE64_LENGTH:
            continue
        if largest is None or width * height > largest[0]:
            largest = (width * height, data)
    if largest:
        return _data_url(largest[1])

    cura = _CURA_RE.search(gcode)
    if cura:
        data = _join_comment_lines(cura.group(1), skip_comments=True)
        if len(data) > MIN_BASE64_LENGTH:
            return _data_url(data)

    luban = _LUBAN_RE.search(gcode)
    if luban:
        data = re.sub(r"\s", "", luban.group(1))
        if len(data) > MIN_BASE64_LENGTH:
            return _data_url(data)

    return None
