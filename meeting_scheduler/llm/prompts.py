"""Prompt templates for the scheduler's model operations.

Templates use ``{name}`` placeholders filled by ``fill_prompt``. JSON examples
inside the templates keep their literal braces.
"""

SCHEDULER_SYSTEM_PROMPT = """You are a meeting scheduling assistant. You help users create calendar meetings
through conversation. Be concise, accurate and never invent facts such as email addresses or times."""

MEETING_INTENT_EXTRACTION_PROMPT = """Analyze the conversation for meeting intent.

Current time: {now}
Context:
{context}

Latest message: "{message}"

Respond in JSON format with conservative confidence:
{
    "intent": "create_meeting|schedule_meeting|other",
    "confidence": 0.0-1.0,
    "fields": {
        "startTime": "ISO 8601 or null",
        "endTime": "ISO 8601 or null",
        "duration": "minutes as number or null",
        "purpose": "string or null",
        "participants": ["email"],
        "suggestedTitle": "string or null",
        "type": "online|physical|null",
        "location": "string or null"
    },
    "missing": ["field_names"]
}

Rules:
- "create_meeting": an explicit request to create or book a meeting
- "schedule_meeting": an ongoing scheduling discussion
- "other": anything else
- Resolve relative dates ("tomorrow at 2pm") against the current time
- Only list participants that appear as email addresses
- Use the context to fill fields missing from the latest message

Examples:
Input: "Schedule a team meeting for tomorrow at 2pm with john@example.com"
Output: {
    "intent": "create_meeting",
    "confidence": 0.9,
    "fields": {
        "startTime": "<tomorrow>T14:00:00",
        "endTime": null,
        "duration": 60,
        "purpose": "Team meeting",
        "participants": ["john@example.com"],
        "suggestedTitle": "Team Sync",
        "type": null,
        "location": null
    },
    "missing": ["type"]
}

Input: "How is your day going?"
Output: {"intent": "other", "confidence": 0.95, "fields": {"participants": []}, "missing": []}"""

TITLE_GENERATION_PROMPT = """Suggest 3 meeting titles.

Purpose: "{purpose}"
People: {participants}
Context: "{context}"

Respond in JSON format:
{
    "suggestions": ["Title1", "Title2", "Title3"],
    "context": "brief explanation"
}

Rules: fewer than 6 words each, specific, action-focused, avoid the words "meeting" and "discussion"."""

PURPOSE_ENHANCEMENT_PROMPT = """Rewrite this meeting purpose as one clear, professional sentence.
Keep every fact, add nothing new.

Purpose: "{purpose}"

Respond with the rewritten sentence only."""

AGENDA_GENERATION_PROMPT = """Write an agenda for "{title}" lasting {duration} minutes.

Purpose: {purpose}
People: {participants}
Context: {context}

Format:
1. Topic (X min)
2. Topic (X min)
3. Topic (X min)
Total: {duration} min

Include an action items or next steps item. Concise, actionable items only."""

ATTENDEE_VERIFICATION_PROMPT = """Verify these email addresses: {emails}

Respond with a JSON array only:
[{"email": "user@domain.com", "valid": true, "trusted": false, "firstName": null, "lastName": null}]

valid: the address is well formed and the domain plausibly receives mail
trusted: the domain is a well-known mail provider or the address is clearly a real person
firstName/lastName: only when the local part makes them obvious"""

TIME_EXTRACTION_PROMPT = """Extract the meeting time from the message.

Current time: {now}
Message: "{message}"

Respond in JSON format:
{
    "startTime": "ISO 8601 or null",
    "endTime": "ISO 8601 or null",
    "duration": "minutes as number or null",
    "confidence": 0.0-1.0
}

Resolve relative dates against the current time. Use null when the message has no time."""

CONVERSATION_SUMMARIZATION_PROMPT = """Summarize the key meeting information from this conversation.

{messages}

Format:
Intent: [meeting/casual/other]
Details: [who, when, what]
Status: [draft/planning/ready]
Next: [action needed]

Key points as bullets:
- point

At most 80 words. Essential information only."""

CHAT_RESPONSE_PROMPT = """Reply to the user as a scheduling assistant.

Conversation:
{context}

User: "{message}"

Keep the reply under 3 sentences. If the user seems to want a meeting, offer to set one up."""


def fill_prompt(template: str, **values) -> str:
    """Replace ``{name}`` placeholders without touching other braces."""
    prompt = template
    for key, value in values.items():
        prompt = prompt.replace("{" + key + "}", str(value))
    return prompt
