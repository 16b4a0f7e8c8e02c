"""
Classifier service client.

Talks to a chat-style completion endpoint in blocking mode. Every answer comes
back as a JSON document inside the `answer` field. Any failure (timeout, HTTP
error, malformed JSON, missing spam flag) is reported as None, which callers
treat as "no verdict".
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from guardbot.models import ClassifierVerdict

logger = logging.getLogger(__name__)

MAX_RETRIES_PER_KEY = 3
MAX_TOTAL_ATTEMPTS = 6

AVATAR_QUERY = "is that same?"


class ChatApiClient:
    def __init__(self, api_key: str, endpoint: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.endpoint = endpoint
        self.transport = transport

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def send_request(self, query: str, user_id, image_urls: Optional[List[str]] = None,
                           timeout: float = 30.0) -> Dict[str, Any]:
        """POST one blocking request. Raises httpx errors to the caller."""
        payload: Dict[str, Any] = {
            "inputs": {},
            "query": query,
            "response_mode": "blocking",
            "user": str(user_id),
        }
        if image_urls:
            payload["files"] = [
                {"type": "image", "transfer_method": "remote_url", "url": url}
                for url in image_urls
            ]

        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            response = await client.post(self.endpoint, headers=self.headers, json=payload)
            response.raise_for_status()
            return response.json()


def parse_answer(data: Dict[str, Any]) -> Dict[str, Any]:
    """Decode the JSON document carried in the `answer` field."""
    answer = json.loads(data["answer"])
    if not isinstance(answer, dict):
        raise ValueError(f"answer is not an object: {answer!r}")
    return answer


def _number(value) -> float:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


class ClassifierService:
    """
    Spam analysis, secondary confirmation, avatar comparison and translation.

    Analysis and secondary checks rotate to a backup key: up to three tries
    on the primary key (or straight away on HTTP 400), then the backup,
    six attempts at most.
    """

    def __init__(
        self,
        endpoint: str,
        analysis_key: str,
        analysis_backup_key: str = "",
        secondary_key: str = "",
        secondary_backup_key: str = "",
        translation_key: str = "",
        analysis_timeout: float = 30.0,
        secondary_timeout: float = 30.0,
        avatar_timeout: float = 30.0,
        translation_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.analysis_timeout = analysis_timeout
        self.secondary_timeout = secondary_timeout
        self.avatar_timeout = avatar_timeout
        self.translation_timeout = translation_timeout

        self._analysis_clients = self._key_pair(analysis_key, analysis_backup_key, transport)
        self._secondary_clients = self._key_pair(secondary_key or analysis_key, secondary_backup_key, transport)
        self._avatar_client = ChatApiClient(secondary_key or analysis_key, endpoint, transport)
        self._translation_client = ChatApiClient(translation_key or analysis_key, endpoint, transport)

    def _key_pair(self, primary: str, backup: str, transport) -> List[ChatApiClient]:
        clients = [ChatApiClient(primary, self.endpoint, transport)]
        if backup:
            clients.append(ChatApiClient(backup, self.endpoint, transport))
        return clients

    async def _request_with_rotation(self, clients: List[ChatApiClient], label: str, query: str, user_id,
                                     timeout: float, image_urls: Optional[List[str]] = None,
                                     require_spam_flag: bool = True) -> Optional[Dict[str, Any]]:
        key_index = 0
        attempt_with_key = 0
        total_attempts = 0

        while total_attempts < MAX_TOTAL_ATTEMPTS:
            client = clients[key_index]
            attempt_with_key += 1
            total_attempts += 1
            status = None
            try:
                data = await client.send_request(query, user_id, image_urls=image_urls, timeout=timeout)
                answer = parse_answer(data)
                if require_spam_flag and not isinstance(answer.get("spam"), bool):
                    raise ValueError(f"spam flag missing or not a boolean: {answer.get('spam')!r}")
                logger.debug(f"{label} succeeded (attempt {total_attempts}/{MAX_TOTAL_ATTEMPTS})")
                return answer
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                logger.warning(f"{label} failed with HTTP {status} (attempt {total_attempts}/{MAX_TOTAL_ATTEMPTS})")
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
                logger.error(f"{label} failed (attempt {total_attempts}/{MAX_TOTAL_ATTEMPTS}): {e}")

            on_primary = key_index == 0 and len(clients) > 1
            if on_primary and (status == 400 or attempt_with_key >= MAX_RETRIES_PER_KEY):
                key_index = 1
                attempt_with_key = 0
                logger.info(f"Switching to backup {label} API key")
            elif attempt_with_key >= MAX_RETRIES_PER_KEY:
                break

        logger.warning(f"{label} gave no verdict after {total_attempts} attempt(s)")
        return None

    @staticmethod
    def _to_verdict(answer: Dict[str, Any]) -> ClassifierVerdict:
        is_english = answer.get("is_english")
        return ClassifierVerdict(
            spam=answer["spam"],
            deviation=_number(answer.get("deviation")),
            suspicion=_number(answer.get("suspicion")),
            inducement=_number(answer.get("inducement")),
            is_english=is_english if isinstance(is_english, bool) else None,
        )

    async def analyze(self, text: str, actor_id) -> Optional[ClassifierVerdict]:
        answer = await self._request_with_rotation(
            self._analysis_clients, "message analysis", text, actor_id, self.analysis_timeout
        )
        return self._to_verdict(answer) if answer is not None else None

    async def analyze_with_images(self, text: str, image_urls: List[str], actor_id) -> Optional[ClassifierVerdict]:
        answer = await self._request_with_rotation(
            self._analysis_clients, "image analysis", text or "", actor_id, self.analysis_timeout,
            image_urls=image_urls,
        )
        return self._to_verdict(answer) if answer is not None else None

    async def secondary_check(self, text: str, actor_id) -> Optional[bool]:
        answer = await self._request_with_rotation(
            self._secondary_clients, "secondary spam check", text, actor_id, self.secondary_timeout
        )
        return answer["spam"] if answer is not None else None

    async def compare_avatars(self, avatar_ref_a: str, avatar_ref_b: str, actor_id) -> Optional[bool]:
        """True when the service says both pictures show the same avatar, None when it gave no answer."""
        try:
            data = await self._avatar_client.send_request(
                AVATAR_QUERY, actor_id, image_urls=[avatar_ref_a, avatar_ref_b], timeout=self.avatar_timeout
            )
            result = parse_answer(data)
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Avatar comparison call failed: {e}")
            return None
        return result.get("spam") is False and result.get("similar_avatar") is True

    async def translate(self, text: str, actor_id) -> Optional[str]:
        query = f"translate {(text or '').strip()} to english, only output English."
        try:
            data = await self._translation_client.send_request(query, actor_id, timeout=self.translation_timeout)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Translation request failed: {e}")
            return None
        translated = data.get("answer") if isinstance(data, dict) else None
        return translated or None
