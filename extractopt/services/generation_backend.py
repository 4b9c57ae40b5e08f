"""Generation backends - unified interface for the AI text-generation services"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests

from extractopt.core import constants
from extractopt.core.exceptions import AIServiceError, BackendHTTPError

logger = logging.getLogger(__name__)

# Optional dependency handling - initialize as None to avoid "possibly unbound" errors
openai: Any = None
openai_available = False

try:
    import openai as _openai
    openai = _openai
    openai_available = True
except ImportError:
    pass

PLACEHOLDER_CONTENT = b"Blank placeholder for document-independent text generation requests.\n"


# ============================================================================
# Credentials
# ============================================================================


class TokenProvider(ABC):
    """Supplies a bearer credential for each backend request"""

    @abstractmethod
    def get_valid_access_token(self) -> Optional[str]:
        """Return a usable token, or None when the operator is not authenticated"""


class StaticTokenProvider(TokenProvider):
    """Fixed token, mainly for scripts and tests"""

    def __init__(self, token: Optional[str]):
        self._token = token

    def get_valid_access_token(self) -> Optional[str]:
        return self._token


class EnvTokenProvider(TokenProvider):
    """Reads the token from the environment on every call so rotation is picked up"""

    def __init__(self, env_var: str = constants.DEFAULT_ACCESS_TOKEN_ENV):
        self.env_var = env_var

    def get_valid_access_token(self) -> Optional[str]:
        token = os.getenv(self.env_var, "").strip()
        return token or None


# ============================================================================
# Backends
# ============================================================================


class GenerationBackend(ABC):
    """Abstract base class for text-generation backends"""

    @abstractmethod
    def generate(
        self,
        prompt: str,
        *,
        access_token: str,
        item_id: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Send one prompt and return the raw response text

        Args:
            prompt: Full request text
            access_token: Bearer credential resolved for this request
            item_id: Document the request refers to, when the backend needs one
            model: Backend model identifier
            timeout: Network timeout in seconds

        Raises:
            BackendHTTPError: Non-2xx response
            requests.RequestException / TimeoutError / ConnectionError: transport failures
        """


class BoxAIBackend(GenerationBackend):
    """Box AI ``/ai/text_gen`` endpoint

    The endpoint requires one file item even for requests that refer to no
    particular document. Without a ``default_item_id``, such requests use a
    blank placeholder file that is found or uploaded once, then reused. When
    Box reports the placeholder missing it is resolved again and the request
    is sent once more.
    """

    def __init__(
        self,
        base_url: str = constants.DEFAULT_API_BASE_URL,
        default_model: str = constants.DEFAULT_GENERATION_MODEL,
        default_item_id: Optional[str] = None,
        session: Optional[requests.Session] = None,
        upload_url: str = constants.DEFAULT_UPLOAD_BASE_URL,
        placeholder_folder_id: str = constants.PLACEHOLDER_FOLDER_ID,
        placeholder_name: str = constants.PLACEHOLDER_FILE_NAME,
    ):
        """
        Initialize Box AI backend

        Args:
            base_url: REST API base URL
            default_model: Model used when a request names none
            default_item_id: File reference used when a request names none
            session: Optional pre-configured requests session
            upload_url: Upload API base URL, used to create the placeholder file
            placeholder_folder_id: Folder searched for, or given, the placeholder file
            placeholder_name: Name of the placeholder file
        """
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.default_item_id = default_item_id
        self.session = session or requests.Session()
        self.upload_url = upload_url.rstrip("/")
        self.placeholder_folder_id = placeholder_folder_id
        self.placeholder_name = placeholder_name
        self._placeholder_id: Optional[str] = None
        self._placeholder_lock = threading.Lock()

    def build_payload(self, prompt: str, item_id: str, model: str) -> dict[str, Any]:
        return {
            "prompt": prompt,
            "items": [{"id": item_id, "type": "file"}],
            "ai_agent": {
                "type": "ai_agent_text_gen",
                "basic_gen": {"model": model},
            },
        }

    def generate(
        self,
        prompt: str,
        *,
        access_token: str,
        item_id: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        item = item_id or self.default_item_id
        uses_placeholder = not item
        if not item:
            item = self.get_placeholder_file_id(access_token, timeout=timeout)

        resolved_model = model or self.default_model
        response = self._post_text_gen(prompt, item, resolved_model, access_token, timeout)
        if uses_placeholder and _is_missing_file(response):
            logger.warning(f"Placeholder file {item} no longer exists, resolving it again")
            item = self.get_placeholder_file_id(access_token, timeout=timeout, refresh=True)
            response = self._post_text_gen(prompt, item, resolved_model, access_token, timeout)

        if not response.ok:
            raise BackendHTTPError(response.status_code, _error_detail(response))

        data = _json_body(response, "Box AI")
        answer = data.get("answer")
        if not isinstance(answer, str):
            raise AIServiceError("Box AI response has no 'answer' text")
        return answer

    def get_placeholder_file_id(
        self,
        access_token: str,
        *,
        timeout: Optional[float] = None,
        refresh: bool = False,
    ) -> str:
        """
        Return the id of the blank placeholder file, finding or uploading it

        Args:
            access_token: Bearer credential for the folder and upload calls
            timeout: Network timeout in seconds
            refresh: Ignore the cached id and look the file up again

        Returns:
            File id of the placeholder
        """
        with self._placeholder_lock:
            if self._placeholder_id and not refresh:
                return self._placeholder_id

            self._placeholder_id = None
            file_id = self._find_placeholder(access_token, timeout)
            if file_id is None:
                file_id = self._upload_placeholder(access_token, timeout)
                logger.info(f"Uploaded placeholder file {self.placeholder_name} as {file_id}")
            else:
                logger.debug(f"Found placeholder file {file_id}")
            self._placeholder_id = file_id
            return file_id

    def _post_text_gen(
        self,
        prompt: str,
        item_id: str,
        model: str,
        access_token: str,
        timeout: Optional[float],
    ) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        return self.session.post(
            f"{self.base_url}{constants.TEXT_GEN_ENDPOINT}",
            json=self.build_payload(prompt, item_id, model),
            headers=headers,
            timeout=timeout,
        )

    def _find_placeholder(self, access_token: str, timeout: Optional[float]) -> Optional[str]:
        url = f"{self.base_url}/folders/{self.placeholder_folder_id}/items"
        offset = 0
        while True:
            response = self.session.get(
                url,
                params={"fields": "id,name,type", "limit": constants.FOLDER_PAGE_SIZE, "offset": offset},
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=timeout,
            )
            if not response.ok:
                raise BackendHTTPError(response.status_code, _error_detail(response))

            data = _json_body(response, "Box folder listing")
            entries = data.get("entries") or []
            for entry in entries:
                if entry.get("type") == "file" and entry.get("name") == self.placeholder_name:
                    return str(entry["id"])

            offset += len(entries)
            if not entries or offset >= int(data.get("total_count") or 0):
                return None

    def _upload_placeholder(self, access_token: str, timeout: Optional[float]) -> str:
        attributes = {"name": self.placeholder_name, "parent": {"id": self.placeholder_folder_id}}
        response = self.session.post(
            f"{self.upload_url}/files/content",
            data={"attributes": json.dumps(attributes)},
            files={"file": (self.placeholder_name, PLACEHOLDER_CONTENT, "text/plain")},
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=timeout,
        )
        # Created concurrently by another client
        if response.status_code == 409:
            conflict_id = _conflict_file_id(response)
            if conflict_id:
                return conflict_id
        if not response.ok:
            raise BackendHTTPError(response.status_code, _error_detail(response))

        entries = _json_body(response, "Box upload").get("entries") or []
        if not entries or "id" not in entries[0]:
            raise AIServiceError("Box upload response has no file id")
        return str(entries[0]["id"])


class OpenAIBackend(GenerationBackend):
    """OpenAI chat completions, with the API key supplied per request"""

    def __init__(self, default_model: str = "gpt-4o-mini", temperature: float = 0.3):
        if not openai_available:
            raise ImportError("OpenAI package not installed. Install with: pip install openai")
        self.default_model = default_model
        self.temperature = temperature

    def generate(
        self,
        prompt: str,
        *,
        access_token: str,
        item_id: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        client = openai.OpenAI(api_key=access_token, timeout=timeout, max_retries=0)
        try:
            response: Any = client.chat.completions.create(
                model=model or self.default_model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self.temperature,
            )
        except openai.APITimeoutError as e:
            raise TimeoutError(f"OpenAI request timed out: {e!s}") from e
        except openai.APIConnectionError as e:
            raise ConnectionError(f"OpenAI connection failed: {e!s}") from e
        except openai.APIStatusError as e:
            raise BackendHTTPError(e.status_code, str(e)) from e
        finally:
            client.close()

        return str(response.choices[0].message.content or "")


def _error_detail(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("code") or body)[:200]
    return str(body)[:200]


def _json_body(response: requests.Response, source: str) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise AIServiceError(f"{source} returned a non-JSON body: {response.text[:200]}") from e
    if not isinstance(data, dict):
        raise AIServiceError(f"{source} returned an unexpected body: {str(data)[:200]}")
    return data


def _is_missing_file(response: requests.Response) -> bool:
    if response.ok:
        return False
    return response.status_code == 404 or "item_not_found" in (response.text or "")


def _conflict_file_id(response: requests.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    conflicts = (body.get("context_info") or {}).get("conflicts") if isinstance(body, dict) else None
    if isinstance(conflicts, list):
        conflicts = conflicts[0] if conflicts else None
    if isinstance(conflicts, dict) and conflicts.get("id"):
        return str(conflicts["id"])
    return None


class BackendFactory:
    """Factory for creating generation backends"""

    @staticmethod
    def create(backend_type: str, **kwargs: Any) -> GenerationBackend:
        """
        Create a backend by name

        Args:
            backend_type: "box" or "openai"
            **kwargs: Passed to the backend constructor

        Returns:
            GenerationBackend instance
        """
        if backend_type == "box":
            return BoxAIBackend(**kwargs)
        if backend_type == "openai":
            return OpenAIBackend(**kwargs)
        raise ValueError(f"Unknown backend type: {backend_type}. Supported: box, openai")
