"""Input sanitization for values that reach logs and audit details."""

import re

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def sanitize_log_value(value: object, max_length: int = 200) -> str:
    """Render an externally supplied id or label safely for a log line.

    Control characters (including newlines) are stripped so a crafted
    subject id cannot forge extra log records.
    """
    text = _CONTROL_CHARS.sub("", str(value)) if value is not None else ""
    if len(text) > max_length:
        text = text[: max_length - 3] + "..."
    return text or "unknown"


def sanitize_filename(filename: str | None, max_length: int = 255) -> str:
    """Reduce an uploaded configuration file name to a safe base name.

    Path components and parent references are dropped, control characters
    removed, and long names truncated with the extension kept, since the
    extension selects the document format.
    """
    if not filename:
        return "unknown"

    safe_name = filename.replace("\\", "/").split("/")[-1].replace("..", "")
    safe_name = _CONTROL_CHARS.sub("", safe_name)

    if len(safe_name) > max_length:
        if "." in safe_name:
            name, ext = safe_name.rsplit(".", 1)
            ext = ext[:10]
            safe_name = name[: max_length - len(ext) - 1] + "." + ext
        else:
            safe_name = safe_name[:max_length]

    return safe_name or "unknown"
