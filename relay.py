"""Streaming question answering over a stored extraction result."""

import json
import logging
from collections.abc import Iterable, Iterator

from config import settings
from inference_client import STREAM_DONE, InferenceClient, TransportError
from prompts import chat_system_prompt
from result_store import ResultStore

logger = logging.getLogger(__name__)


def ask_about_result(
    store: ResultStore,
    client: InferenceClient,
    result_id: str,
    question: str,
) -> Iterator[str]:
    """Stream an answer to a question about a stored result.

    The lookup happens before anything is streamed, so an unknown id raises
    ResultNotFound here rather than on first iteration. The returned iterator
    is single-use.
    """
    result = store.get(result_id)
    document = result.model_dump(mode="json", by_alias=True)

    logger.info("Chat request for %s (%d chars)", result_id, len(question))
    return client.stream_complete(
        question,
        system=chat_system_prompt(document),
        temperature=settings.CHAT_TEMPERATURE,
    )


def sse_events(chunks: Iterable[str]) -> Iterator[str]:
    """Frame text deltas as server-sent events, ending with a [DONE] sentinel.

    A transport failure mid-stream ends the stream with an error event and no
    sentinel; chunks already sent are left to the client.
    """
    try:
        for chunk in chunks:
            yield f"data: {json.dumps({'content': chunk})}\n\n"
    except TransportError as e:
        logger.error("Chat stream failed: %s", e)
        yield f"data: {json.dumps({'error': str(e)})}\n\n"
        return

    yield f"data: {STREAM_DONE}\n\n"
