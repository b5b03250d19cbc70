"""Claude Vision oracle: reads the in-game clock and checks the visible roster."""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import anthropic

from .calibrate import parse_clock_text
from .schemas import ClockReading, RosterVerdict, VerificationContext
from .settings import ANTHROPIC_API_KEY, settings

logger = logging.getLogger(__name__)


CLOCK_PROMPT = """This is a single frame from a League of Legends match recording.

TASK: Read the in-game timer shown at the top-right of the HUD (format MM:SS).

RESPOND WITH ONLY A JSON OBJECT:
{
  "detected": <true if the timer is readable, otherwise false>,
  "timeStr": "<timer text exactly as shown, e.g. 12:34>",
  "minutes": <integer minutes>,
  "seconds": <integer seconds>
}
"""

ROSTER_PROMPT = """You are checking {count} frames from a League of Legends match recording.

The uploader claims they played: {champion}
Their team: {allies}
Enemy team: {enemies}

TASK: Decide whether this recording belongs to that match.
- Identify the champion the camera follows (the player's own champion).
- List every champion you can see on the HUD, scoreboard or in the field.

RESPOND WITH ONLY A JSON OBJECT:
{{
  "isValid": <true or false>,
  "reason": "<CHAMPION_MISMATCH | TEAM_MISMATCH | OTHER | empty when valid>",
  "detectedChampion": "<champion the camera follows, or null>",
  "detectedChampions": ["<every champion visible>"],
  "confidence": <0.0-1.0>
}}
"""


def _image_block(image: bytes) -> Dict[str, Any]:
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": "image/jpeg",
            "data": base64.standard_b64encode(image).decode("utf-8"),
        },
    }


class ClaudeVisionOracle:
    """Use Claude's vision API for the clock-reading and roster-verification roles."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        client: Any = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> None:
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key or ANTHROPIC_API_KEY)
        self.model = model or settings.VISION_MODEL
        self.max_tokens = int(max_tokens or settings.VISION_MAX_TOKENS)
        logger.info("[VISION] Initialized Claude vision oracle", extra={"model": self.model})

    @staticmethod
    def clean_json_response(response_text: str) -> str:
        """Strip markdown fences and surrounding prose from a JSON reply."""

        if not response_text:
            return response_text

        cleaned = response_text.strip()
        if "```json" in cleaned:
            parts = cleaned.split("```json")
            if len(parts) > 1:
                cleaned = parts[1].split("```")[0].strip()
        elif "```" in cleaned:
            parts = cleaned.split("```")
            if len(parts) >= 3:
                cleaned = parts[1].strip()

        json_start = -1
        for char in ["{", "["]:
            pos = cleaned.find(char)
            if pos != -1 and (json_start == -1 or pos < json_start):
                json_start = pos

        json_end = -1
        for char in ["}", "]"]:
            pos = cleaned.rfind(char)
            if pos != -1 and pos > json_end:
                json_end = pos

        if json_start != -1 and json_end != -1 and json_end > json_start:
            cleaned = cleaned[json_start:json_end + 1]
        return cleaned

    async def _ask(self, images: Sequence[bytes], prompt: str) -> Dict[str, Any]:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0.0,
            messages=[
                {
                    "role": "user",
                    "content": [*(_image_block(img) for img in images), {"type": "text", "text": prompt}],
                }
            ],
        )
        response_text = response.content[0].text.strip()
        logger.debug(f"[VISION] raw response: {response_text[:200]}")
        payload = json.loads(self.clean_json_response(response_text))
        if not isinstance(payload, dict):
            raise ValueError("vision response is not a JSON object")
        return payload

    async def read_game_clock(self, image: bytes) -> ClockReading:
        try:
            payload = await self._ask([image], CLOCK_PROMPT)
        except json.JSONDecodeError as exc:
            logger.error(f"[VISION] Failed to parse clock response: {exc}")
            return ClockReading(success=False, error=f"unparseable response: {exc}")
        except (anthropic.APIError, ValueError) as exc:
            logger.error(f"[VISION] Clock read error: {type(exc).__name__}: {exc}")
            return ClockReading(success=False, error=str(exc))

        if not payload.get("detected"):
            return ClockReading(success=True, seconds=None, text=payload.get("timeStr"))

        text = payload.get("timeStr")
        minutes = payload.get("minutes")
        seconds = payload.get("seconds")
        if isinstance(minutes, (int, float)) and isinstance(seconds, (int, float)):
            value: Optional[float] = float(minutes) * 60 + float(seconds)
        else:
            value = parse_clock_text(str(text or ""))
        logger.info(f"[VISION] Game clock read: {text} -> {value}")
        return ClockReading(success=True, seconds=value, text=text)

    async def verify_roster(
        self, images: Sequence[bytes], context: VerificationContext
    ) -> RosterVerdict:
        prompt = ROSTER_PROMPT.format(
            count=len(images),
            champion=context.claimed_champion,
            allies=", ".join(context.ally_champions) or "unknown",
            enemies=", ".join(context.enemy_champions) or "unknown",
        )
        try:
            payload = await self._ask(images, prompt)
        except json.JSONDecodeError as exc:
            logger.error(f"[VISION] Failed to parse roster response: {exc}")
            return RosterVerdict(success=False, error=f"unparseable response: {exc}")
        except (anthropic.APIError, ValueError) as exc:
            logger.error(f"[VISION] Roster check error: {type(exc).__name__}: {exc}")
            return RosterVerdict(success=False, error=str(exc))

        detected: List[str] = [str(c) for c in payload.get("detectedChampions") or [] if c]
        return RosterVerdict(
            success=True,
            is_valid=bool(payload.get("isValid", False)),
            reason=payload.get("reason") or None,
            detected_champion=payload.get("detectedChampion"),
            detected_champions=detected,
            confidence=payload.get("confidence"),
        )


class DisabledVision:
    """Stand-in used when Claude vision is switched off or has no API key.

    Clock reads fail soft, so calibration falls back to a zero offset;
    roster checks fail, so paid reviews stop at the verification gate.
    """

    def __init__(self, reason: str = "Claude vision is disabled") -> None:
        self.reason = reason
        logger.warning(f"[VISION] {reason}; clock reading and roster checks unavailable")

    async def read_game_clock(self, image: bytes) -> ClockReading:
        return ClockReading(success=False, error=self.reason)

    async def verify_roster(
        self, images: Sequence[bytes], context: VerificationContext
    ) -> RosterVerdict:
        return RosterVerdict(success=False, error=self.reason)
