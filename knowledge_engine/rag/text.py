"""Text normalization shared by extraction and chunking."""

import re

# NUL, C0 controls except \t \n \r, DEL, and the replacement character
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F\uFFFD]")
_ALNUM = re.compile(r"[^\W_]", re.UNICODE)

# Classification thresholds
MIN_TEXT_CHARS = 200
MIN_TEXT_RATIO = 0.1

CONTENT_TEXT = "text"
CONTENT_IMAGE = "image"
CONTENT_HYBRID = "hybrid"


def sanitize_text(text: str | None) -> str:
    """Strip characters that the storage layer rejects.

    Idempotent; output never contains NUL.
    """
    if not text:
        return ""
    return _CONTROL_CHARS.sub("", text)


def count_alnum(text: str) -> int:
    return len(_ALNUM.findall(text))


def classify_text(text: str | None) -> str:
    """Guess whether text came from a real text layer or a scanned image.

    Returns "image" when there is almost no readable content, "hybrid" when
    readable characters are sparse, and "text" otherwise.
    """
    if not text or text.startswith("%PDF"):
        return CONTENT_IMAGE

    readable = count_alnum(text)
    if readable < MIN_TEXT_CHARS:
        return CONTENT_IMAGE
    if readable / len(text) < MIN_TEXT_RATIO:
        return CONTENT_HYBRID
    return CONTENT_TEXT


def describe_content_type(content_type: str) -> str | None:
    """Warning shown to the caller for low-quality extractions."""
    if content_type == CONTENT_IMAGE:
        return "Document appears to be scanned or image-only; extracted text may be empty or incomplete"
    if content_type == CONTENT_HYBRID:
        return "Document mixes text and images; some content may not have been extracted"
    return None


def clean_text(text: str) -> str:
    """Remove extraction artifacts to improve chunk quality."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")

    # Words split across lines
    text = re.sub(r"-\n", "", text)

    # Page number artifacts
    text = re.sub(r"Page\s+\d+", "", text, flags=re.IGNORECASE)
    text = re.sub(r"第\s*\d+\s*页", "", text)
    text = re.sub(r"^\s*\d+\s*$", "", text, flags=re.MULTILINE)
    text = re.sub(r"^\s*-\s*\d+\s*-\s*$", "", text, flags=re.MULTILINE)

    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)

    return text.strip()
