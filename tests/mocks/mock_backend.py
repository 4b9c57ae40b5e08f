"""Mock generation backend - FOR TESTING ONLY

This module provides a scripted generation backend for unit tests.
It should NEVER be used in production code.
"""

from collections.abc import Callable
from typing import Optional, Union

from extractopt.services.generation_backend import GenerationBackend, TokenProvider


Scripted = Union[str, BaseException]


class MockGenerationBackend(GenerationBackend):
    """Mock backend - returns or raises scripted items in order"""

    DEFAULT_RESPONSE = '{"newPrompt": "Extract the value.", "reasoning": "Mock reasoning"}'

    def __init__(
        self,
        mock_response: Optional[str] = None,
        response_sequence: Optional[list[Scripted]] = None,
        on_call: Optional[Callable[[str], None]] = None,
        responder: Optional[Callable[[str], Scripted]] = None,
    ):
        """
        Initialize mock backend.

        Args:
            mock_response: Returned once the sequence is used up
            response_sequence: Items returned (strings) or raised (exceptions) in order
            on_call: Invoked with the prompt before each response is produced
            responder: Chooses the item from the prompt; takes precedence over the sequence
        """
        self.mock_response = mock_response if mock_response is not None else self.DEFAULT_RESPONSE
        self.response_sequence = list(response_sequence or [])
        self.on_call = on_call
        self.responder = responder
        self._sequence_index = 0
        self.call_count = 0
        self.prompts: list[str] = []
        self.item_ids: list[Optional[str]] = []
        self.models: list[Optional[str]] = []
        self.tokens: list[str] = []
        self.timeouts: list[Optional[float]] = []

    def generate(
        self,
        prompt: str,
        *,
        access_token: str,
        item_id: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Return or raise the next scripted item and track the call"""
        self.call_count += 1
        self.prompts.append(prompt)
        self.item_ids.append(item_id)
        self.models.append(model)
        self.tokens.append(access_token)
        self.timeouts.append(timeout)

        if self.on_call is not None:
            self.on_call(prompt)

        if self.responder is not None:
            item = self.responder(prompt)
        elif self._sequence_index < len(self.response_sequence):
            item = self.response_sequence[self._sequence_index]
            self._sequence_index += 1
        else:
            item = self.mock_response

        if isinstance(item, BaseException):
            raise item
        return item

    def reset(self) -> None:
        """Reset call tracking"""
        self.call_count = 0
        self.prompts = []
        self.item_ids = []
        self.models = []
        self.tokens = []
        self.timeouts = []


class CountingTokenProvider(TokenProvider):
    """Token provider that records how often it was asked"""

    def __init__(self, token: Optional[str] = "test-token"):
        self.token = token
        self.calls = 0

    def get_valid_access_token(self) -> Optional[str]:
        self.calls += 1
        return self.token
