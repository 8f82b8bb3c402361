"""HTTP client for the coding-agent server.

Implements AgentServerClient against the server's REST API. Every request
carries the working directory as the ``directory`` query parameter.
"""

from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from threadbridge.constants import AGENT_DEFAULT_BASE_URL, AGENT_REQUEST_TIMEOUT_S
from threadbridge.core.errors import AgentApiError, SessionNotFoundError
from threadbridge.core.models import AgentFragment, AgentSession

logger = structlog.get_logger(__name__)

__all__ = ["AgentServerHttpClient"]


class _SessionTime(BaseModel):
    created: Optional[float] = None
    updated: Optional[float] = None


class _SessionPayload(BaseModel):
    id: str
    title: str = ""
    directory: Optional[str] = None
    time: _SessionTime = Field(default_factory=_SessionTime)

    def to_session(self) -> AgentSession:
        return AgentSession(id=self.id, title=self.title, directory=self.directory, updated_at=self.time.updated)


class _PartPayload(BaseModel):
    id: str
    messageID: str = ""
    type: str
    text: Optional[str] = None


class _MessageInfoPayload(BaseModel):
    id: str
    role: str = ""


class _MessagePayload(BaseModel):
    info: _MessageInfoPayload
    parts: list[_PartPayload] = Field(default_factory=list)

    def fragments(self) -> list[AgentFragment]:
        return [
            AgentFragment(id=p.id, message_id=p.messageID or self.info.id, type=p.type, text=p.text or "")
            for p in self.parts
        ]


_sessions_adapter = TypeAdapter(list[_SessionPayload])
_messages_adapter = TypeAdapter(list[_MessagePayload])


def _split_model(model: str) -> dict[str, str]:
    """Split "provider/model" into the providerID/modelID pair the server expects."""
    provider, _, model_id = model.partition("/")
    if not model_id:
        raise ValueError(f"Model must be in provider/model form: {model}")
    return {"providerID": provider, "modelID": model_id}


class AgentServerHttpClient:
    """Async agent server client on httpx."""

    def __init__(
        self,
        base_url: str = AGENT_DEFAULT_BASE_URL,
        timeout_s: float = AGENT_REQUEST_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize client.

        Args:
            base_url: Agent server root URL
            timeout_s: Per-request timeout (prompts can run for minutes)
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout_s, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        directory: Optional[str] = None,
        json_body: Optional[dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            SessionNotFoundError: 404 on a session path
            AgentApiError: Any other error status, transport failure or bad JSON
        """
        client = await self._get_client()
        params = {"directory": directory} if directory else None
        try:
            response = await client.request(method, path, params=params, json=json_body)
        except httpx.TimeoutException as e:
            raise AgentApiError(0, f"request to {path} timed out") from e
        except httpx.HTTPError as e:
            raise AgentApiError(0, f"cannot reach agent server: {e}") from e

        if response.status_code == 404 and session_id is not None:
            raise SessionNotFoundError(session_id=session_id)
        if response.status_code >= 400:
            logger.debug("Agent API error", method=method, path=path, status=response.status_code)
            raise AgentApiError(response.status_code, response.text)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise AgentApiError(response.status_code, f"invalid JSON from {path}") from e

    @staticmethod
    def _parse(model: type[BaseModel], data: Any, path: str) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise AgentApiError(200, f"unexpected response from {path}: {e.error_count()} validation error(s)") from e

    async def create_session(self, directory: str, title: Optional[str] = None) -> AgentSession:
        body = {"title": title} if title else {}
        data = await self._request("POST", "/session", directory=directory, json_body=body)
        return self._parse(_SessionPayload, data, "/session").to_session()

    async def get_session(self, session_id: str, directory: Optional[str] = None) -> AgentSession:
        path = f"/session/{session_id}"
        data = await self._request("GET", path, directory=directory, session_id=session_id)
        return self._parse(_SessionPayload, data, path).to_session()

    async def list_sessions(self, directory: str) -> list[AgentSession]:
        data = await self._request("GET", "/session", directory=directory)
        try:
            sessions = _sessions_adapter.validate_python(data or [])
        except ValidationError as e:
            raise AgentApiError(200, f"unexpected response from /session: {e.error_count()} validation error(s)") from e
        return [s.to_session() for s in sessions]

    async def update_session(self, session_id: str, title: str, directory: Optional[str] = None) -> AgentSession:
        path = f"/session/{session_id}"
        data = await self._request("PATCH", path, directory=directory, json_body={"title": title}, session_id=session_id)
        return self._parse(_SessionPayload, data, path).to_session()

    async def fork_session(self, session_id: str, message_id: str, directory: Optional[str] = None) -> AgentSession:
        path = f"/session/{session_id}/fork"
        data = await self._request(
            "POST", path, directory=directory, json_body={"messageID": message_id}, session_id=session_id
        )
        return self._parse(_SessionPayload, data, path).to_session()

    async def fetch_messages(self, session_id: str, directory: Optional[str] = None) -> list[AgentFragment]:
        path = f"/session/{session_id}/message"
        data = await self._request("GET", path, directory=directory, session_id=session_id)
        try:
            messages = _messages_adapter.validate_python(data or [])
        except ValidationError as e:
            raise AgentApiError(200, f"unexpected response from {path}: {e.error_count()} validation error(s)") from e
        return [fragment for message in messages for fragment in message.fragments()]

    async def send_prompt(
        self,
        session_id: str,
        text: str,
        directory: Optional[str] = None,
        model: Optional[str] = None,
        agent: Optional[str] = None,
    ) -> list[AgentFragment]:
        path = f"/session/{session_id}/message"
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if model:
            body["model"] = _split_model(model)
        if agent:
            body["agent"] = agent

        data = await self._request("POST", path, directory=directory, json_body=body, session_id=session_id)
        return self._parse(_MessagePayload, data, path).fragments()

    async def abort_session(self, session_id: str, directory: Optional[str] = None) -> bool:
        path = f"/session/{session_id}/abort"
        data = await self._request("POST", path, directory=directory, session_id=session_id)
        return bool(data)
