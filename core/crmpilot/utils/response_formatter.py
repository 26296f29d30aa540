"""
Response formatter to keep user-facing output clean.

Outputs human-readable text - no JSON dumps, no code fences,
no technical artifacts.
"""

import re
from typing import Iterable, Optional

from crmpilot.engine.intent import Intent, IntentAction


APOLOGY = "I'm sorry, I couldn't work out what you'd like me to do. Could you try rephrasing that?"

GENERIC_SUGGESTIONS = [
    "Show me my contacts",
    "Create a chart of deals by stage",
    "Analyze my pipeline",
]

ACTION_PHRASES = {
    IntentAction.CREATE_CHART: "create a chart",
    IntentAction.MODIFY_CHART: "change the chart",
    IntentAction.VIEW_DATA: "show your records",
    IntentAction.EXPLORE_DATA: "explore your data",
    IntentAction.EXPORT_DATA: "export your data",
    IntentAction.ANALYZE_DATA: "analyze your data",
    IntentAction.SEND_EMAIL: "send an email",
    IntentAction.GENERAL_CONVERSATION: "help with a question",
}


def _record_label(row: dict) -> str:
    first, last = row.get("firstName"), row.get("lastName")
    if first or last:
        return " ".join(p for p in (first, last) if p)
    return str(row.get("name") or row.get("subject") or row.get("id") or "record")


class ResponseFormatter:
    """Converts handler results and model text into UI-friendly strings."""

    MAX_LIST_ITEMS = 8

    @staticmethod
    def sanitize_text(text: str) -> str:
        """
        Remove JSON blocks and triple quotes from model output.
        Keeps plain text only.
        """
        cleaned = re.sub(r"```(?:json)?\s*.*?```", "", text, flags=re.DOTALL | re.IGNORECASE)
        cleaned = re.sub(r"\{\s*\"action\"[^}]*\}", "", cleaned, flags=re.DOTALL | re.IGNORECASE)
        cleaned = re.sub(r"`{3,}", "", cleaned)
        cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
        return cleaned.strip()

    @staticmethod
    def describe_action(intent: Intent) -> str:
        phrase = ACTION_PHRASES.get(intent.action)
        if phrase:
            if intent.action == IntentAction.VIEW_DATA and intent.entities.data_type:
                return f"show your {intent.entities.data_type}"
            return phrase
        verb, noun = intent.action.value.split("_", 1)
        return f"{verb} {'an' if noun[0] in 'aeiou' else 'a'} {noun}"

    @staticmethod
    def low_confidence_prefix(intent: Intent) -> str:
        return f"I think you want me to {ResponseFormatter.describe_action(intent)}. "

    @staticmethod
    def format_result(result_type: str, content: Optional[str], data=None) -> str:
        summary = ResponseFormatter.sanitize_text(content or "") or "Done."
        if result_type == "data" and isinstance(data, list):
            return ResponseFormatter._format_with_summary(
                summary, ResponseFormatter._render_records(data)
            )
        return summary

    # ─────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────

    @staticmethod
    def _format_with_summary(summary: str, lines: Iterable[str]) -> str:
        detail_lines = [line for line in lines if line]
        if detail_lines:
            return "\n".join([summary] + detail_lines)
        return summary

    @staticmethod
    def _render_records(rows: list[dict]) -> list[str]:
        lines = []
        for row in rows[: ResponseFormatter.MAX_LIST_ITEMS]:
            detail = row.get("email") or row.get("stage") or row.get("status") or row.get("industry")
            suffix = f" ({detail})" if detail else ""
            lines.append(f"{len(lines) + 1}) {_record_label(row)}{suffix}")
        if len(rows) > ResponseFormatter.MAX_LIST_ITEMS:
            lines.append(f"...and {len(rows) - ResponseFormatter.MAX_LIST_ITEMS} more")
        return lines
