"""Resilient AI client - every backend call goes through credentials, retry and timeout handling"""

import logging
from typing import Optional

from extractopt.core.exceptions import AuthenticationError
from extractopt.core.models import RetryConfig
from extractopt.services.generation_backend import GenerationBackend, TokenProvider
from extractopt.services.retry_handler import RetryHandler

logger = logging.getLogger(__name__)


class ResilientAIClient:
    """
    Single entry point for text generation

    The credential is resolved from the token provider for each request and
    never cached here. A missing credential fails before any network call and
    does not count against the retry budget.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        token_provider: TokenProvider,
        retry_config: RetryConfig = RetryHandler.AI_RETRY_CONFIG,
        retry_handler: Optional[RetryHandler] = None,
        model: Optional[str] = None,
        default_item_id: Optional[str] = None,
    ):
        self.backend = backend
        self.token_provider = token_provider
        self.retry_config = retry_config
        self.retry_handler = retry_handler or RetryHandler()
        self.model = model
        self.default_item_id = default_item_id

    def invoke(
        self,
        prompt: str,
        *,
        item_id: Optional[str] = None,
        model: Optional[str] = None,
        component: str = "ai_client",
        operation: str = "text_gen",
        retry_config: Optional[RetryConfig] = None,
    ) -> str:
        """
        Send a prompt and return the response text

        Raises:
            AuthenticationError: No credential available
            RetryExhausted: Retryable failures outlasted the retry budget
            Exception: Any non-retryable failure, unchanged
        """
        access_token = self.token_provider.get_valid_access_token()
        if not access_token:
            logger.error(f"[{component}.{operation}] No valid access token; not calling backend")
            raise AuthenticationError("No valid access token available. Please re-authenticate.")

        config = retry_config or self.retry_config
        return self.retry_handler.execute_with_retry(
            self.backend.generate,
            prompt,
            retry_config=config,
            component=component,
            operation=operation,
            access_token=access_token,
            item_id=item_id or self.default_item_id,
            model=model or self.model,
            timeout=config.attempt_timeout,
        )
