"""Token estimation and accurate token counting."""
import math
from typing import Dict, Optional

import structlog
import tiktoken

logger = structlog.get_logger()

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Cheap token estimate (1 token ~ 4 characters of English text)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenCounter:
    """Accurate token counts with tiktoken, per embedding model.

    Encodings are loaded lazily and cached. If tiktoken cannot load an
    encoding (e.g. no network to fetch the BPE file) the counter falls back
    to the character estimate and says so in the logs.
    """

    def __init__(self):
        self._encodings: Dict[str, Optional[tiktoken.Encoding]] = {}

    def _encoding_for(self, model: str) -> Optional[tiktoken.Encoding]:
        if model in self._encodings:
            return self._encodings[model]

        try:
            name = tiktoken.encoding_name_for_model(model)
        except KeyError:
            name = "cl100k_base"

        try:
            encoding = tiktoken.get_encoding(name)
        except Exception as e:
            logger.warning(
                "tiktoken_unavailable_using_estimate",
                model=model,
                error=str(e),
            )
            encoding = None

        self._encodings[model] = encoding
        return encoding

    def count(self, text: str, model: str) -> int:
        """Count tokens in ``text`` as ``model`` would."""
        encoding = self._encoding_for(model)
        if encoding is None:
            return estimate_tokens(text)
        return len(encoding.encode(text, disallowed_special=()))

    def truncate(self, text: str, model: str, max_tokens: int) -> str:
        """Cut ``text`` to at most ``max_tokens`` tokens for ``model``."""
        encoding = self._encoding_for(model)
        if encoding is None:
            return text[: max_tokens * CHARS_PER_TOKEN]
        tokens = encoding.encode(text, disallowed_special=())
        if len(tokens) <= max_tokens:
            return text
        return encoding.decode(tokens[:max_tokens])
