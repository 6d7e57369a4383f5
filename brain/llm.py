import itertools
import logging
import os
from typing import Callable, Iterable, Iterator, List, Optional

import openai
from dotenv import load_dotenv
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

from .errors import BrainError, InvalidResponseError, MissingCredentialError, UpstreamServiceError
from .schemas import Message, ModelConfig

load_dotenv()
logger = logging.getLogger(__name__)

ModelFactory = Callable[[ModelConfig, str, Optional[float]], BaseChatModel]


class EnvCredentials:
    """Provider API keys from the environment (or a .env file)."""
    ENV_VARS = {"openai": "OPENAI_API_KEY", "google": "GOOGLE_API_KEY"}

    def resolve(self, user_id: Optional[str], provider: str) -> str:
        key = os.getenv(self.ENV_VARS.get(provider, ""), "")
        if not key:
            raise MissingCredentialError(f"{provider} API key not found. Please set your API key first.")
        return key


class RepositoryCredentials(EnvCredentials):
    """Per-user keys saved through the repository, falling back to the environment."""

    def __init__(self, repository, fallback_to_env: bool = True):
        self.repository = repository
        self.fallback_to_env = fallback_to_env

    def resolve(self, user_id: Optional[str], provider: str) -> str:
        if user_id:
            key = self.repository.get_api_key(user_id, provider)
            if key:
                return key
        if self.fallback_to_env:
            return super().resolve(user_id, provider)
        raise MissingCredentialError(f"{provider} API key not found for user {user_id}")


def default_model_factory(config: ModelConfig, api_key: str, timeout: Optional[float]) -> BaseChatModel:
    # max_retries=0: retry policy belongs to the caller
    if config.provider == "google":
        return ChatGoogleGenerativeAI(
            model=config.model,
            temperature=config.temperature,
            max_output_tokens=config.max_tokens,
            top_p=config.top_p,
            google_api_key=api_key,
            timeout=timeout,
            max_retries=0,
        )
    return ChatOpenAI(
        model=config.model,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        top_p=config.top_p,
        frequency_penalty=config.frequency_penalty,
        presence_penalty=config.presence_penalty,
        api_key=api_key,
        timeout=timeout,
        max_retries=0,
    )


def to_langchain_messages(messages: Iterable) -> List[BaseMessage]:
    converted = []
    for msg in messages:
        if isinstance(msg, dict):
            msg = Message(**msg)
        if msg.role == "system":
            converted.append(SystemMessage(content=msg.content))
        elif msg.role == "assistant":
            converted.append(AIMessage(content=msg.content))
        else:
            converted.append(HumanMessage(content=msg.content))
    return converted


def content_text(content) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return "" if content is None else str(content)


def translate_error(exc: Exception) -> Optional[BrainError]:
    """Map a provider exception onto the walk's error taxonomy, or None if it is not a provider failure."""
    if isinstance(exc, BrainError):
        return exc
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return MissingCredentialError(f"Provider rejected the API key: {exc}")
    if isinstance(exc, (openai.APIError, TimeoutError)):
        return UpstreamServiceError(f"Provider request failed: {exc}")
    module = type(exc).__module__ or ""
    if module.startswith(("google.", "langchain_google_genai")):
        if type(exc).__name__ in ("Unauthenticated", "PermissionDenied"):
            return MissingCredentialError(f"Provider rejected the API key: {exc}")
        return UpstreamServiceError(f"Provider request failed: {exc}")
    return None


class ResponseStream:
    """Lazy, single-use sequence of reply chunks.

    Iterating pulls chunks from the provider as they arrive. Closing the
    stream (explicitly, via `with`, or by abandoning iteration) releases the
    provider connection. Callbacks registered with `on_complete` receive
    the joined text once the stream has been read to the end; `on_close`
    callbacks run exactly once, after any completion callbacks, however the
    stream ends.
    """

    def __init__(self, chunks: Iterator[str], model: Optional[str] = None, temperature: Optional[float] = None):
        self._chunks = chunks
        self._parts: List[str] = []
        self._callbacks: List[Callable[[str], None]] = []
        self._close_callbacks: List[Callable[[], None]] = []
        self._consumed = False
        self.closed = False
        self.model = model
        self.temperature = temperature

    def on_complete(self, callback: Callable[[str], None]) -> Callable[[str], None]:
        self._callbacks.append(callback)
        return callback

    def on_close(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._close_callbacks.append(callback)
        return callback

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def __iter__(self) -> Iterator[str]:
        if self._consumed:
            raise RuntimeError("Response stream can only be consumed once")
        self._consumed = True
        return self._generate()

    def _generate(self) -> Iterator[str]:
        try:
            for chunk in self._chunks:
                self._parts.append(chunk)
                yield chunk
            text = self.text
            for callback in self._callbacks:
                callback(text)
        finally:
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            close = getattr(self._chunks, "close", None)
            if close is not None:
                close()
        finally:
            for callback in self._close_callbacks:
                callback()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __del__(self):
        # An abandoned stream must still release whatever waits on it
        self.close()


class LLMService:
    """Completion and streaming calls against a LangChain chat model.

    Provider failures surface as `MissingCredentialError`,
    `UpstreamServiceError` or `InvalidResponseError`; nothing is retried.
    """

    def __init__(self, credentials=None, user_id: Optional[str] = None, timeout: Optional[float] = None,
                 model_factory: Optional[ModelFactory] = None):
        self.credentials = credentials or EnvCredentials()
        self.user_id = user_id
        self.timeout = timeout
        self.model_factory = model_factory or default_model_factory

    def _model(self, config: ModelConfig) -> BaseChatModel:
        api_key = self.credentials.resolve(self.user_id, config.provider)
        return self.model_factory(config, api_key, self.timeout)

    def complete(self, messages, config: ModelConfig) -> str:
        model = self._model(config)
        try:
            reply = model.invoke(to_langchain_messages(messages))
        except Exception as exc:
            translated = translate_error(exc)
            if translated is None:
                raise
            logger.error(f"Completion with {config.provider}/{config.model} failed: {exc}")
            raise translated from exc
        text = content_text(reply.content)
        if not text.strip():
            raise InvalidResponseError(f"Empty response from {config.model}")
        return text

    def stream(self, messages, config: ModelConfig) -> ResponseStream:
        """Open the provider stream and wait for its first chunk.

        Credential, provider and empty-reply failures therefore raise here,
        while the walk is still at the prompt node, rather than mid-reply.
        """
        model = self._model(config)
        chunks = self._iter_chunks(model, to_langchain_messages(messages), config)
        first = next(chunks)
        stream = ResponseStream(itertools.chain([first], chunks), model=config.model, temperature=config.temperature)
        stream.on_close(chunks.close)
        return stream

    def _iter_chunks(self, model: BaseChatModel, messages: List[BaseMessage], config: ModelConfig) -> Iterator[str]:
        upstream = None
        emitted = False
        try:
            upstream = model.stream(messages)
            for chunk in upstream:
                text = content_text(chunk.content)
                if text:
                    emitted = True
                    yield text
        except Exception as exc:
            translated = translate_error(exc)
            if translated is None:
                raise
            logger.error(f"Stream from {config.provider}/{config.model} failed: {exc}")
            raise translated from exc
        finally:
            close = getattr(upstream, "close", None)
            if close is not None:
                close()
        if not emitted:
            raise InvalidResponseError(f"Empty stream from {config.model}")
