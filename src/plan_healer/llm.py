# llm.py
# The one capability the engine needs from a language model:
# submit messages, receive streamed text, optionally cancel.
#
# Only the accumulated text is consumed by validation and regeneration;
# chunks are forwarded to on_chunk purely for progress display.

import logging
import threading
from typing import Callable, Protocol

from openai import OpenAI

from plan_healer.errors import GenerationCancelled

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]


class LanguageModel(Protocol):
    def send_streaming_message(
        self,
        messages: list[dict],
        on_chunk: ChunkCallback | None = None,
        abort_signal: threading.Event | None = None,
    ) -> str:
        """
        Stream a completion and return the full text.

        Must raise GenerationCancelled as soon as abort_signal is observed set.
        """
        ...


def check_abort(abort_signal: threading.Event | None) -> None:
    if abort_signal is not None and abort_signal.is_set():
        raise GenerationCancelled("Generation aborted by caller")


class OpenAIChatModel:
    """
    Streaming chat completions against any OpenAI-compatible endpoint.

    Example:
        model = OpenAIChatModel(
            model="anthropic/claude-3.5-haiku",
            api_key=os.getenv("OPENROUTER_API_KEY"),
        )
        text = model.send_streaming_message([{"role": "user", "content": "hi"}])
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str = "https://openrouter.ai/api/v1",
        client: OpenAI | None = None,
    ) -> None:
        self._model = model
        self._client = client or OpenAI(base_url=base_url, api_key=api_key)

    @property
    def model(self) -> str:
        return self._model

    def send_streaming_message(
        self,
        messages: list[dict],
        on_chunk: ChunkCallback | None = None,
        abort_signal: threading.Event | None = None,
    ) -> str:
        check_abort(abort_signal)

        stream = self._client.chat.completions.create(
            model=self._model,
            messages=messages,
            stream=True,
        )
        parts: list[str] = []
        try:
            for chunk in stream:
                # Closing the stream in `finally` drops the HTTP connection.
                check_abort(abort_signal)
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content or ""
                if not delta:
                    continue
                parts.append(delta)
                if on_chunk is not None:
                    on_chunk(delta)
        finally:
            stream.close()

        text = "".join(parts).strip()
        logger.debug("Model %s returned %d chars", self._model, len(text))
        return text
