"""Fold orchestrator decisions into the AI-summary fields of calls and messages."""
from typing import List, Optional

from ..schemas.pydantic_schemas import AISummary, OrchestratorDecision, SmsAnalysis


def extract_keywords(text: str, limit: int = 20) -> List[str]:
    seen: List[str] = []
    for word in text.split():
        word = word.strip(".,!?;:\"'()").lower()
        if len(word) > 3 and word not in seen:
            seen.append(word)
    return seen[:limit]


def call_analysis(decision: OrchestratorDecision, text: str, previous: Optional[AISummary] = None) -> AISummary:
    info = decision.extracted_info
    keywords = list((previous.keywords if previous else []))
    for word in extract_keywords(text):
        if word not in keywords:
            keywords.append(word)
    return AISummary(
        summary=previous.summary if previous else None,
        intent=info.intent or (previous.intent if previous else None),
        sentiment=info.sentiment,
        keywords=keywords,
        action_items=list(previous.action_items) if previous else [],
        follow_up_required=info.urgency == "high" or bool(previous and previous.follow_up_required),
    )


def sms_analysis(decision: OrchestratorDecision, text: str, auto_response_sent: bool) -> SmsAnalysis:
    info = decision.extracted_info
    return SmsAnalysis(
        intent=info.intent,
        sentiment=info.sentiment,
        urgency=info.urgency,
        keywords=extract_keywords(text),
        requires_response=decision.should_respond,
        suggested_response=decision.message,
        confidence=0.5 if decision.is_fallback else 0.8,
        auto_response_sent=auto_response_sent,
    )
