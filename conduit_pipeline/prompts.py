"""Prompt rendering for the extraction call."""

from __future__ import annotations

from .models import ExtractionContext, StoredMessage

# Bodies beyond this are truncated; long threads quote the whole history.
MAX_BODY_CHARS = 12_000

_OUTPUT_FORMAT = """{
  "counterparty": {
    "name": "string or null",
    "email": "string or null",
    "firm": "string or null",
    "matched_id": "id from Known Counterparties, or null"
  },
  "deal": {
    "name": "string or null",
    "matched_id": "id from Known Deals, or null"
  },
  "intent": "interested | committed | declined | question | null",
  "commitment_amount": "number in USD, or null",
  "sentiment": "positive | neutral | negative | urgent | null",
  "questions": ["questions the sender is asking"],
  "has_wire_details": "true if the message contains wire or banking instructions, else false",
  "confidence": {
    "counterparty": 0.0,
    "deal": 0.0,
    "intent": 0.0,
    "amount": 0.0
  },
  "reasoning": "one or two sentences explaining the analysis"
}"""

_RULES = """1. When a field cannot be determined, use null and give it a low confidence (0.0-0.3).
2. Amounts are plain numbers in USD: "500K" is 500000, "$1.5M" is 1500000.
3. Intent:
   - "interested": a positive signal without an explicit commitment
   - "committed": an explicit commitment to invest
   - "declined": an explicit pass
   - "question": mainly asking questions, no clear commitment
4. Match counterparties by email address first, then by name and firm.
5. Match deals by name, allowing informal variants ("Acme Series B", "the Acme deal").
6. Only use ids that appear in the known lists. Otherwise set matched_id to null and still extract name/firm.
7. Auto-replies, out-of-office notices and system notifications: every field null, questions empty, all confidences 0.
8. Questions are verbatim or minimally paraphrased; use an empty list when there are none.
9. Confidences are numbers between 0 and 1."""


def _counterparty_lines(context: ExtractionContext) -> str:
    if not context.counterparties:
        return "No known counterparties yet"
    lines = []
    for c in context.counterparties:
        firm = f" - {c.firm}" if c.firm else ""
        lines.append(f"- {c.name} ({c.email or 'no email'}){firm} [ID: {c.id}]")
    return "\n".join(lines)


def _deal_lines(context: ExtractionContext) -> str:
    if not context.deals:
        return "No open deals yet"
    lines = []
    for d in context.deals:
        company = f" ({d.company_name})" if d.company_name else ""
        lines.append(f"- {d.name}{company} [{d.status}] [ID: {d.id}]")
    return "\n".join(lines)


def build_extraction_prompt(message: StoredMessage, context: ExtractionContext) -> str:
    """Render the single user turn sent to the model for *message*."""
    body = (message.body_text or "").strip() or "(empty body)"
    if len(body) > MAX_BODY_CHARS:
        body = body[:MAX_BODY_CHARS] + "\n[truncated]"

    return f"""You analyze investor correspondence for a fund manager's relationship tracker.
Extract structured information from the message below and answer with JSON only.

## Known Deals
{_deal_lines(context)}

## Known Counterparties
{_counterparty_lines(context)}

## Message
From: {message.from_address}
From Name: {message.from_name or "Unknown"}
Subject: {message.subject or "(no subject)"}
Date: {message.received_at.isoformat()}
Body:
\"\"\"
{body}
\"\"\"

## Output Format
Return exactly this JSON object and nothing else:

{_OUTPUT_FORMAT}

## Rules
{_RULES}
"""
