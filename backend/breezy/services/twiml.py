"""Render call-flow steps as TwiML documents."""
from typing import Iterable, Optional

from twilio.twiml.messaging_response import MessagingResponse
from twilio.twiml.voice_response import VoiceResponse

from ..schemas.pydantic_schemas import AISettings
from .call_flow import Dial, Gather, Hangup, Record, Redirect, Say, Step


def render_voice(steps: Iterable[Step], ai_settings: Optional[AISettings] = None) -> str:
    ai_settings = ai_settings or AISettings()
    voice, language = ai_settings.voice, ai_settings.language
    response = VoiceResponse()
    for step in steps:
        if isinstance(step, Say):
            response.say(step.text, voice=voice, language=language)
        elif isinstance(step, Gather):
            gather = response.gather(
                input=step.input,
                action=step.action,
                method="POST",
                speech_timeout=step.timeout,
                speech_model="phone_call",
            )
            gather.say(step.prompt, voice=voice, language=language)
        elif isinstance(step, Dial):
            response.dial(step.number)
        elif isinstance(step, Record):
            response.record(action=step.action, method="POST", max_length=step.max_length, play_beep=True)
        elif isinstance(step, Redirect):
            response.redirect(step.url, method="POST")
        elif isinstance(step, Hangup):
            response.hangup()
        else:
            raise TypeError(f"Unknown call step: {step!r}")
    return str(response)


def render_message(body: Optional[str] = None) -> str:
    """An SMS webhook reply; empty when the reply is sent out-of-band or not at all."""
    response = MessagingResponse()
    if body:
        response.message(body)
    return str(response)
