"""
OpenAI Chat Completions client for answering questions about a meeting.

Uses a persistent aiohttp session with connection pooling; answers are
short and meant to be spoken.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

import aiohttp

from voicechat.config import settings
from voicechat.errors import ResponsePipelineError
from voicechat.models import ChatMessage, GeneratedResponse

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """Sen "Enerwise AI" adlı akıllı bir toplantı asistanısın.
Kullanıcılar toplantı bittikten sonra seninle sesli sohbet ederek toplantı hakkında sorular sorar.
Sen toplantı transkriptini kullanarak yanıt verirsin.

Kuralların:
1. Türkçe yanıt ver.
2. Kısa ve öz ol - sesli yanıt vereceğin için 2-3 cümleyi geçme.
3. Toplantı bağlamı dışında kalan sorulara nazikçe toplantıya odaklanmalarını hatırlat.
4. Toplantıda bahsedilmeyen konular hakkında "Bu konu toplantıda ele alınmadı" de.
5. Kullanıcıya yardımcı ve profesyonel ol.
6. Emoji kullanma çünkü sesli okuyacaksın.

Şu anki toplantı transkripti aşağıda sana verilecek. Bu bilgiyi kullanarak kullanıcının sorularını yanıtla."""

NO_CONTEXT_MARKER = "\n\n(Henüz toplantı transkripti bulunmuyor)"


def build_messages(
    user_text: str,
    context_text: str,
    history: Sequence[ChatMessage],
) -> List[Dict[str, str]]:
    """
    Assemble the chat completion message list.

    Args:
        user_text: Finalized user turn
        context_text: Meeting transcript (may be empty)
        history: Prior chat messages in order

    Returns:
        system prompt + history + user message
    """
    if context_text and context_text.strip():
        context_block = (
            f"\n\n--- TOPLANTI TRANSKRİPTİ ---\n{context_text.strip()}\n--- TRANSKRİPT SONU ---"
        )
    else:
        context_block = NO_CONTEXT_MARKER

    messages = [{"role": "system", "content": SYSTEM_PROMPT + context_block}]
    messages.extend({"role": m.role, "content": m.text} for m in history)
    messages.append({"role": "user", "content": user_text})
    return messages


class OpenAIChatClient:
    """
    Response generator backed by the Chat Completions API.

    Features:
    - Persistent HTTP connection pool
    - Non-streaming request: spoken answers are 2-3 sentences
    - Every failure raised as ResponsePipelineError
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = settings.openai_model
        self.temperature = settings.openai_temperature
        self.max_tokens = settings.openai_max_tokens
        self.base_url = "https://api.openai.com/v1/chat/completions"

        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create persistent aiohttp session with connection pooling."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                ttl_dns_cache=300,
                keepalive_timeout=120,
            )
            timeout = aiohttp.ClientTimeout(
                total=30,
                connect=3,
                sock_read=20,
            )
            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
            logger.info("Created persistent OpenAI chat session with connection pooling")

        return self._session

    async def close(self):
        """Close persistent session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.info("Closed OpenAI chat session")

    async def generate(
        self,
        user_text: str,
        context_text: str,
        history: Sequence[ChatMessage],
    ) -> GeneratedResponse:
        """
        Answer one user turn.

        Returns:
            GeneratedResponse with text only; speech is synthesized separately

        Raises:
            ResponsePipelineError: missing key, HTTP error, network error or
                empty completion
        """
        if not self.api_key:
            raise ResponsePipelineError("OpenAI API key is not configured")

        payload = {
            "model": self.model,
            "messages": build_messages(user_text, context_text, history),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            session = await self._get_session()
            start_time = asyncio.get_running_loop().time()

            async with session.post(self.base_url, headers=headers, json=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"OpenAI API error {response.status}: {error_text[:200]}")
                    raise ResponsePipelineError(
                        f"OpenAI API error {response.status}",
                        status=response.status,
                    )
                data = await response.json()

        except aiohttp.ClientError as e:
            logger.error(f"OpenAI network error: {e}")
            raise ResponsePipelineError(f"OpenAI network error: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error("OpenAI request timed out")
            raise ResponsePipelineError("OpenAI request timed out") from e

        text = extract_completion_text(data)
        if not text:
            raise ResponsePipelineError("OpenAI returned an empty completion")

        elapsed = int((asyncio.get_running_loop().time() - start_time) * 1000)
        logger.info(f"LLM response in {elapsed}ms: {len(text)} chars")
        return GeneratedResponse(text=text)


def extract_completion_text(data: dict) -> str:
    """First choice content of a chat completion body, stripped."""
    choices = data.get("choices") or []
    if not choices:
        return ""
    message = choices[0].get("message") or {}
    return (message.get("content") or "").strip()
