import logging
from typing import Any, Dict, Optional

from ..schemas.pydantic_schemas import AISummary
from .contact_resolver import ContactResolver
from .ledger import Ledger

logger = logging.getLogger(__name__)


def merge_summary(previous: Optional[AISummary], summary: Dict[str, Any]) -> AISummary:
    """Post-call summary wins where it has a value; per-turn analysis fills the gaps."""
    previous = previous or AISummary()
    keywords = summary.get("keywords")
    action_items = summary.get("actionItems")
    follow_up = summary.get("followUpRequired")
    return AISummary(
        summary=summary.get("summary") or previous.summary,
        intent=summary.get("intent") or previous.intent,
        sentiment=summary.get("sentiment") or previous.sentiment,
        keywords=[str(k) for k in keywords] if isinstance(keywords, list) and keywords else previous.keywords,
        action_items=[str(a) for a in action_items] if isinstance(action_items, list) else previous.action_items,
        follow_up_required=follow_up if isinstance(follow_up, bool) else previous.follow_up_required,
    )


class CallSummarizer:
    def __init__(self, ledger: Ledger, llm: Any, resolver: Optional[ContactResolver] = None) -> None:
        self.ledger = ledger
        self.llm = llm
        self.resolver = resolver

    async def summarize(self, call_sid: str) -> Optional[AISummary]:
        """Summarize a finished call's transcript into its AI summary. Failures are logged, never raised."""
        call = self.ledger.get_call(call_sid)
        if not call or not call.transcript:
            logger.info(f"No transcript to summarize for call {call_sid}")
            return None
        try:
            summary = await self.llm.summarize_transcript(call.transcript)
        except Exception as e:
            logger.error(f"Post-call summary failed for call {call_sid}: {str(e)}")
            return None

        merged = merge_summary(call.ai_summary, summary)
        self.ledger.update_call(call_sid, {"ai_summary": merged})
        if self.resolver and call.contact_id and merged.sentiment:
            self.ledger.record("update_contact_sentiment", call.contact_id, self.resolver.record_sentiment, call.contact_id, merged.sentiment)
        logger.info(f"Stored post-call summary for call {call_sid}")
        return merged
