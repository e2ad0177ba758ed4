"""
Tokenizer and pricing collaborators for token metering.
"""

import threading
from abc import ABC, abstractmethod

import tiktoken

from aivp.data.schemas import ModelPricing
from aivp.exceptions import TokenizerError
from aivp.utils.logging import get_logger
from config.config import config

logger = get_logger(__name__)


class Tokenizer(ABC):
    """Abstract token counter."""

    @abstractmethod
    def count_tokens(self, text: str, model: str) -> int:
        """
        Count tokens of ``text`` as ``model`` would encode it.

        Raises:
            TokenizerError: If the text cannot be encoded
        """
        pass


class TiktokenTokenizer(Tokenizer):
    """Token counter backed by tiktoken encodings, cached per model."""

    def __init__(self, fallback_encoding: str = "cl100k_base"):
        self.fallback_encoding = fallback_encoding
        self._encodings: dict[str, tiktoken.Encoding] = {}
        self._lock = threading.Lock()

    def _encoding_for(self, model: str) -> tiktoken.Encoding:
        with self._lock:
            encoding = self._encodings.get(model)
            if encoding is None:
                try:
                    encoding = tiktoken.encoding_for_model(model)
                except KeyError:
                    logger.debug(f"No tiktoken mapping for {model}, using {self.fallback_encoding}")
                    encoding = tiktoken.get_encoding(self.fallback_encoding)
                self._encodings[model] = encoding
            return encoding

    def count_tokens(self, text: str, model: str) -> int:
        try:
            return len(self._encoding_for(model).encode(text, disallowed_special=()))
        except TokenizerError:
            raise
        except Exception as e:
            raise TokenizerError(f"Failed to encode text for {model}: {e}", cause=e) from e


class PricingTable:
    """Per-model rates per 1000 tokens with a default tier for unknown models."""

    def __init__(self, rates: dict[str, dict[str, float]] | None = None, default_model: str | None = None):
        raw_rates = rates if rates is not None else config.pricing.rates
        self.rates = {model: ModelPricing(**values) for model, values in raw_rates.items()}
        self.default_model = default_model or config.pricing.default_model
        if self.default_model not in self.rates:
            raise ValueError(f"Default pricing model '{self.default_model}' has no rates")

    def resolve_model(self, model: str | None) -> str:
        """Model whose rates apply; unknown names fall back to the default tier."""
        if model and model in self.rates:
            return model
        logger.debug(f"No pricing for model {model!r}, falling back to {self.default_model}")
        return self.default_model

    def rates_for(self, model: str | None) -> ModelPricing:
        return self.rates[self.resolve_model(model)]
