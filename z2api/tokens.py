from __future__ import annotations

from typing import Any, Optional

import tiktoken


class TokenEstimator:
    def __init__(self, encoding_name: str = "cl100k_base") -> None:
        self.encoding: Optional[Any] = None
        try:
            self.encoding = tiktoken.get_encoding(encoding_name)
        except Exception:
            # encoding files are downloaded on first use; offline hosts estimate instead
            self.encoding = None

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        if self.encoding is not None:
            return len(self.encoding.encode(text, disallowed_special=()))
        return max(1, len(text) // 4)


_ESTIMATOR: Optional[TokenEstimator] = None


def get_estimator() -> TokenEstimator:
    global _ESTIMATOR
    if _ESTIMATOR is None:
        _ESTIMATOR = TokenEstimator()
    return _ESTIMATOR


def count_tokens(text: str) -> int:
    return get_estimator().count_text(text)
