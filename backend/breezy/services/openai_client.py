import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from openai import AsyncOpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from ..config import Settings, get_settings
from .escalation import detect_appointment_request, detect_goodbye, detect_transfer_request

logger = logging.getLogger(__name__)

# The orchestrator prefixes the caller's newest words with this marker
LATEST_INPUT_MARKER = "Customer message:"
APPOINTMENT_REQUEST_PREFIX = "Schedule appointment:"
# System-prompt rule naming the business's transfer keyword; the simulated model reads it back
TRANSFER_KEYWORD_RULE = "If someone asks to speak to a human or says \"{keyword}\", set action to \"transfer\""
_TRANSFER_KEYWORD_RE = re.compile(re.escape(TRANSFER_KEYWORD_RULE).replace(re.escape("{keyword}"), "(.+?)"))


POSTCALL_SYSTEM_PROMPT = (
    "You are a post-call summarization assistant for a small business phone line. "
    "Given the caller's side of a phone call transcript, produce one JSON object with exactly these keys:\n\n"
    "{\n  \"summary\": \"<brief summary of the call>\",\n  \"intent\": \"<what the caller wanted>\",\n"
    "  \"sentiment\": \"positive\" | \"neutral\" | \"negative\",\n  \"keywords\": [\"<key topics>\"],\n"
    "  \"actionItems\": [\"<what needs to be done>\"],\n  \"followUpRequired\": true | false\n}\n\n"
    "Use only evidence from the transcript. No explanations outside the JSON."
)


class OpenAIClient:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        self.timeout = settings.llm_timeout_seconds
        # Try Groq first (free), fallback to OpenAI
        if settings.groq_api_key:
            self.client = AsyncOpenAI(
                api_key=settings.groq_api_key,
                base_url="https://api.groq.com/openai/v1",
                timeout=self.timeout,
                max_retries=0,
            )
            self.model = settings.groq_model
            self.provider = "groq"
        elif settings.openai_api_key:
            self.client = AsyncOpenAI(api_key=settings.openai_api_key, timeout=self.timeout, max_retries=0)
            self.model = settings.openai_model
            self.provider = "openai"
        else:
            self.client = None
            self.model = None
            self.provider = "simulated"
        self.simulated = self.client is None
        logger.info(f"OpenAIClient using {self.provider} responses")

    async def complete_json(self, system_prompt: str, user_prompt: str, temperature: float = 0.7, max_tokens: int = 500) -> str:
        """One chat completion in JSON mode. Returns the raw reply text; parsing is the caller's job."""
        if self.simulated:
            return self._simulated_reply(system_prompt, user_prompt)
        chat = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format={"type": "json_object"},
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return chat.choices[0].message.content or ""

    @retry(wait=wait_exponential(min=1, max=10), stop=stop_after_attempt(3))
    async def summarize_transcript(self, transcript_text: str) -> Dict[str, Any]:
        if self.simulated:
            return self._simulated_summary(transcript_text)
        raw = await self.complete_json(POSTCALL_SYSTEM_PROMPT, transcript_text, temperature=0.3, max_tokens=400)
        summary = json.loads(raw)
        if not isinstance(summary, dict):
            raise ValueError("Summary reply was not a JSON object")
        return summary

    # Rule-based stand-ins used when no API key is configured

    def _simulated_reply(self, system_prompt: str, user_prompt: str) -> str:
        text = user_prompt.rsplit(LATEST_INPUT_MARKER, 1)[-1].strip()
        keyword_rule = _TRANSFER_KEYWORD_RE.search(system_prompt)
        transfer_keyword = keyword_rule.group(1) if keyword_rule else None
        info = {"intent": "general_inquiry", "urgency": "medium", "sentiment": "neutral"}
        if text.startswith(APPOINTMENT_REQUEST_PREFIX):
            slot = (datetime.now(timezone.utc) + timedelta(days=1)).replace(hour=10, minute=0, second=0, microsecond=0)
            reply = {
                "action": "appointment",
                "message": "I can book that for you.",
                "shouldRespond": True,
                "extractedInfo": {**info, "intent": "appointment"},
                "appointmentTime": slot.isoformat(),
            }
        elif detect_transfer_request(text, transfer_keyword):
            reply = {
                "action": "transfer",
                "message": "Let me connect you with someone who can help.",
                "shouldRespond": True,
                "extractedInfo": {**info, "intent": "speak_to_human"},
            }
        elif detect_appointment_request(text):
            reply = {
                "action": "appointment",
                "message": "I'd be happy to help you schedule an appointment.",
                "shouldRespond": True,
                "extractedInfo": {**info, "intent": "appointment"},
            }
        elif detect_goodbye(text):
            reply = {
                "action": "end",
                "message": "Thank you for calling. Have a great day!",
                "shouldRespond": False,
                "extractedInfo": {**info, "intent": "goodbye", "urgency": "low", "sentiment": "positive"},
            }
        else:
            reply = {
                "action": "information",
                "message": "Thanks for reaching out. Someone from our team can share more details.",
                "shouldRespond": True,
                "extractedInfo": info,
            }
        return json.dumps(reply)

    def _simulated_summary(self, transcript_text: str) -> Dict[str, Any]:
        words = [w.strip(".,!?").lower() for w in transcript_text.split()]
        keywords = sorted({w for w in words if len(w) > 3})[:10]
        return {
            "summary": transcript_text[:200],
            "intent": "speak_to_human" if detect_transfer_request(transcript_text) else "general_inquiry",
            "sentiment": "neutral",
            "keywords": keywords,
            "actionItems": [],
            "followUpRequired": False,
        }
