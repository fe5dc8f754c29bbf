"""Token counting for retrieval budgets.

Uses tiktoken so the prompt budget is measured in real tokens rather than
the 4-chars-per-token rule of thumb.
"""

from loguru import logger
import tiktoken

CHARS_PER_TOKEN = 4


class TokenCounter:
    """
    Token counting using tiktoken.

    If the encoding cannot be loaded (e.g. the BPE file is not cached and
    there is no network), counts fall back to ``len(text) // 4``.
    """

    def __init__(self, encoding_name: str = "cl100k_base"):
        """
        Initialize the token counter.

        Args:
            encoding_name: The tiktoken encoding to use.
        """
        self.encoding_name = encoding_name
        self._encoding = None
        self._init_encoding()

    def _init_encoding(self):
        try:
            self._encoding = tiktoken.get_encoding(self.encoding_name)
            logger.debug(f"TokenCounter initialized with {self.encoding_name} encoding")
        except Exception as e:
            logger.warning(f"tiktoken encoding {self.encoding_name} unavailable ({e}), using estimation")
            self._encoding = None

    def count_tokens(self, text: str) -> int:
        """
        Count tokens in text.

        Args:
            text: The text to count.

        Returns:
            Number of tokens.
        """
        if not text:
            return 0

        if self._encoding is not None:
            return len(self._encoding.encode(text))

        return max(1, len(text) // CHARS_PER_TOKEN)
