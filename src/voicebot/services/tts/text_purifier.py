"""Clean LLM output before it is sent to a speech synthesizer."""

import re

_EMOJI_PATTERN = re.compile(
    "["
    "\U0001F000-\U0001FAFF"  # pictographs, emoticons, transport, symbols
    "\U00002600-\U000027BF"  # misc symbols and dingbats
    "\U00002B00-\U00002BFF"  # arrows and stars
    "\u200d"  # zero width joiner
    "\ufe0f"  # variation selector
    "\u20e3"  # keycap
    "]+"
)

# Markdown markers that speech engines read out literally
_MARKDOWN_PATTERN = re.compile(r"(\*{1,3}|_{2,3}|`{1,3}|^#{1,6}\s*|^>\s*|^[-*+]\s+)", re.MULTILINE)
_LINK_PATTERN = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_WHITESPACE_PATTERN = re.compile(r"\s+")

_PUNCTUATION_MAP = str.maketrans(
    {
        "“": '"',
        "”": '"',
        "„": '"',
        "‘": "'",
        "’": "'",
        "–": "-",
        "—": ", ",
        "，": ", ",
        "；": "; ",
        "：": ": ",
        "！": "! ",
        "？": "? ",
        "（": "(",
        "）": ")",
    }
)


def purify_text_for_tts(text: str) -> str:
    """Strip emoji and markdown, normalize punctuation, and collapse whitespace."""
    if not text:
        return ""

    cleaned = _LINK_PATTERN.sub(r"\1", text)
    cleaned = _MARKDOWN_PATTERN.sub("", cleaned)
    cleaned = _EMOJI_PATTERN.sub("", cleaned)
    cleaned = cleaned.translate(_PUNCTUATION_MAP)
    cleaned = cleaned.replace("...", "…")
    cleaned = _WHITESPACE_PATTERN.sub(" ", cleaned)
    # Translation can leave a space before punctuation ("word ,")
    cleaned = re.sub(r"\s+([,.;:!?])", r"\1", cleaned)
    return cleaned.strip()


__all__ = ["purify_text_for_tts"]
