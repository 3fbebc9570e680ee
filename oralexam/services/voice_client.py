"""
oralexam/services/voice_client.py
Client for the ElevenLabs conversational AI REST API

Covers what the exam lifecycle needs:
- a signed connection URL for the browser to open the live conversation
- conversation status, transcript and audio by conversation id
- HMAC verification of webhook deliveries
"""
import hashlib
import hmac
import logging
from typing import Any, Dict, List, NamedTuple, Optional

import httpx

from oralexam.config.settings import settings
from oralexam.exceptions import VoiceProviderError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-elevenlabs-signature"


class ConversationInfo(NamedTuple):
    conversation_id: str
    status: Optional[str]
    duration_seconds: Optional[int]


class AudioDownload(NamedTuple):
    source_url: str
    content: bytes
    content_type: str


class VoiceClient:
    """Thin async wrapper over the voice provider endpoints."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        agent_id: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.ELEVENLABS_API_KEY
        self.agent_id = agent_id if agent_id is not None else settings.ELEVENLABS_AGENT_ID
        self.base_url = (base_url or settings.ELEVENLABS_API_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key) and bool(self.agent_id)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"xi-api-key": self.api_key or ""},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(path, params=params)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Voice API error on {path}: {e.response.status_code} {e.response.text[:200]}")
            raise VoiceProviderError(f"Voice provider returned {e.response.status_code} for {path}") from e
        except httpx.HTTPError as e:
            logger.error(f"Voice API request failed on {path}: {type(e).__name__}: {e}")
            raise VoiceProviderError(f"Voice provider unreachable: {type(e).__name__}") from e
        except ValueError as e:
            raise VoiceProviderError(f"Voice provider returned a non-JSON body for {path}") from e

    async def get_signed_url(self) -> str:
        """
        Signed URL the browser uses to open the conversation.

        The conversation id is not known yet; the client reports it after
        the connection is established.
        """
        if not self.is_configured():
            raise VoiceProviderError("Voice provider is not configured (ELEVENLABS_API_KEY / ELEVENLABS_AGENT_ID)")

        data = await self._get_json("/convai/conversation/get-signed-url", params={"agent_id": self.agent_id})
        signed_url = data.get("signed_url")
        if not signed_url:
            raise VoiceProviderError("Voice provider did not return a signed URL")
        logger.info("Voice signed URL obtained")
        return signed_url

    async def get_conversation(self, conversation_id: str) -> ConversationInfo:
        data = await self._get_json(f"/convai/conversations/{conversation_id}")
        metadata = data.get("metadata") or {}
        duration = metadata.get("duration_seconds")
        return ConversationInfo(
            conversation_id=data.get("conversation_id", conversation_id),
            status=data.get("status"),
            duration_seconds=int(duration) if isinstance(duration, (int, float)) else None,
        )

    async def get_transcript(self, conversation_id: str) -> List[Dict[str, Any]]:
        data = await self._get_json(f"/convai/conversations/{conversation_id}/transcript")
        transcript = data.get("transcript")
        return transcript if isinstance(transcript, list) else []

    async def download_audio(self, conversation_id: str) -> Optional[AudioDownload]:
        """Audio for a finished conversation, or None if the provider has none."""
        try:
            async with self._client() as client:
                response = await client.get(f"/convai/conversations/{conversation_id}/audio")
                if response.status_code != 200:
                    logger.info(f"No audio available for conversation {conversation_id} ({response.status_code})")
                    return None
                try:
                    audio_url = response.json().get("audio_url")
                except (ValueError, AttributeError) as e:
                    raise VoiceProviderError(
                        f"Audio lookup for conversation {conversation_id} did not return a JSON object"
                    ) from e
                if not audio_url:
                    return None

                audio = await client.get(audio_url)
                if audio.status_code != 200:
                    return None
                return AudioDownload(
                    source_url=audio_url,
                    content=audio.content,
                    content_type=audio.headers.get("content-type", "audio/webm"),
                )
        except httpx.HTTPError as e:
            raise VoiceProviderError(f"Audio download failed: {type(e).__name__}") from e


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Check a "sha256=<hex>" HMAC signature over the raw request body.

    With no secret configured, verification is skipped (development mode).
    With a secret configured, a missing signature is rejected.
    """
    if not secret:
        return True
    if not signature:
        return False

    expected = "sha256=" + hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))


_voice_client: Optional[VoiceClient] = None


def get_voice_client() -> VoiceClient:
    global _voice_client
    if _voice_client is None:
        _voice_client = VoiceClient()
    return _voice_client
