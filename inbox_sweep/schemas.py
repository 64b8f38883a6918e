from __future__ import annotations

DEFAULT_CLASSIFICATION_PROMPT = """You triage incoming email for a busy professional.
Pick the single best label for each email. Use "support" for questions or
problems that need a personal answer and "General" when no other label fits."""

DEFAULT_RESPONSE_PROMPT = """Write a short, polite reply in plain text.
Acknowledge the sender's request and say a person will follow up if needed.
Do not promise dates, prices or anything you cannot verify."""

BATCH_OUTPUT_DESCRIPTION = """The model must respond with a single JSON object with this shape:

{
  "results": [
    {
      "id": "item id string, exactly as provided after ID:",
      "label": "the chosen label",
      "confidence": number between 0 and 1,
      "reasoning": "one short sentence, at most 200 characters"
    }
  ]
}

Rules:

- Include exactly one entry for every email in the batch.
- Never invent ids.
- Return JSON only, with no commentary before or after it.
"""

REPLY_OUTPUT_DESCRIPTION = """Respond with a single JSON object:

{"reply": "plain text reply body", "tone": "formal | neutral | friendly"}

Return JSON only.
"""
