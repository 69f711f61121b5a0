from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar, runtime_checkable
import logging

from langchain_ollama import ChatOllama, OllamaEmbeddings
from langchain_core.prompts import ChatPromptTemplate

from .cancellation import CancelToken, ensure_token
from .config import settings
from .errors import Canceled

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class LLMProvider(Protocol):
    """Chat completion plus embeddings, as used by extraction and queries."""

    def complete(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        token: Optional[CancelToken] = None,
        **parameters: Any,
    ) -> str: ...

    def embed_texts(
        self, texts: List[str], token: Optional[CancelToken] = None
    ) -> List[List[float]]: ...

    def embed_query(
        self, text: str, token: Optional[CancelToken] = None
    ) -> List[float]: ...


class LLMClient:
    """
    LangChain/Ollama implementation of `LLMProvider`.

    A token with a deadline bounds the HTTP call itself: the remaining time
    becomes the Ollama client timeout for that call, and a call that runs
    out of time raises `Canceled`.
    """

    def __init__(
        self,
        chat_model: str | None = None,
        embedding_model: str | None = None,
        temperature: float | None = None,
        base_url: str | None = None,
    ):
        base_url = base_url or settings.ollama_base_url
        if temperature is None:
            temperature = settings.llm_temperature

        self.chat_kwargs: Dict[str, Any] = {
            "model": chat_model or settings.ollama_chat_model,
            "temperature": temperature,
            "base_url": base_url,
        }
        self.embedding_kwargs: Dict[str, Any] = {
            "model": embedding_model or settings.ollama_embedding_model,
            "base_url": base_url,
        }
        self.chat = ChatOllama(**self.chat_kwargs)
        self.embeddings = OllamaEmbeddings(**self.embedding_kwargs)
        self.prompt = ChatPromptTemplate.from_messages(
            [
                ("system", "{system}"),
                ("user", "{input}"),
            ]
        )

    def chat_for(self, token: CancelToken, parameters: Dict[str, Any]) -> ChatOllama:
        remaining = token.remaining()
        if remaining is None:
            return self.chat.model_copy(update=parameters) if parameters else self.chat
        return ChatOllama(
            **{**self.chat_kwargs, **parameters},
            client_kwargs={"timeout": remaining},
        )

    def embeddings_for(self, token: CancelToken) -> OllamaEmbeddings:
        remaining = token.remaining()
        if remaining is None:
            return self.embeddings
        return OllamaEmbeddings(**self.embedding_kwargs, client_kwargs={"timeout": remaining})

    def _run(self, fn: Callable[[], T], token: CancelToken, what: str) -> T:
        token.raise_if_cancelled(what)
        try:
            out = fn()
        except Exception as e:
            if token.cancelled:
                raise Canceled(f"{what} cancelled: {e}") from e
            raise
        token.raise_if_cancelled(what)
        return out

    def complete(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        token: Optional[CancelToken] = None,
        **parameters: Any,
    ) -> str:
        token = ensure_token(token)

        def call() -> str:
            chain = self.prompt | self.chat_for(token, parameters)
            resp = chain.invoke(
                {"system": system_prompt or "You are a helpful assistant.", "input": prompt}
            )
            return resp.content

        return self._run(call, token, "llm completion")

    def embed_texts(
        self, texts: List[str], token: Optional[CancelToken] = None
    ) -> List[List[float]]:
        token = ensure_token(token)
        if not texts:
            token.raise_if_cancelled("embedding")
            return []
        return self._run(lambda: self.embeddings_for(token).embed_documents(texts), token, "embedding")

    def embed_query(self, text: str, token: Optional[CancelToken] = None) -> List[float]:
        token = ensure_token(token)
        return self._run(lambda: self.embeddings_for(token).embed_query(text), token, "embedding")
