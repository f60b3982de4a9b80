"""
Sentence segmentation for streaming TTS text.

This module splits accumulated LLM output into completed sentences and an
unterminated remainder. It holds no state: the caller keeps the buffer and
feeds it back in on every call.

Usage:
    buffer += chunk
    sentences, buffer = split_sentences(buffer)
    for sentence in sentences:
        ...

A sentence is complete once its terminator has been observed *and* followed by
something. Latin terminators (``.``, ``!``, ``?``, ``…``) need trailing
whitespace so that ``3.14`` or a ``!!`` run split across two chunks is never
cut early. Full-width terminators (``。！？``) need any following character,
since CJK text is usually written without spaces.
"""

import re
from typing import List, Tuple

# Closing quotes and brackets that belong to the sentence they close
_CLOSERS = "\"'”’)\\]」』）"

_SENTENCE_END = re.compile(
    rf"(?:[.!?…]+|[。！？]+)[{_CLOSERS}]*(?=\s)"
    rf"|[。！？]+[{_CLOSERS}]*(?=\S)"
)


def split_sentences(text: str) -> Tuple[List[str], str]:
    """
    Split text into completed sentences and the unterminated remainder.

    Args:
        text: Accumulated text, possibly ending mid-sentence

    Returns:
        Tuple of (sentences in order, remainder). Sentences are stripped and
        never empty; the remainder has leading whitespace removed.
    """
    sentences: List[str] = []
    start = 0

    for match in _SENTENCE_END.finditer(text):
        sentence = text[start:match.end()].strip()
        start = match.end()
        if sentence:
            sentences.append(sentence)

    return sentences, text[start:].lstrip()


def normalize_partial_text(text: str) -> str:
    """Collapse line breaks to spaces so they never split a sentence."""
    return text.replace("\r\n", " ").replace("\n", " ").replace("\r", " ")


__all__ = ["normalize_partial_text", "split_sentences"]
