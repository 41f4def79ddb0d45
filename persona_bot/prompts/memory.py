from __future__ import annotations

import json
from typing import Dict, Iterable, List, Mapping

from .json_loader import load_prompt_json, prompt_text

_DEFAULTS = {
    "consolidation_schema_hint_object": {
        "memories": [
            {
                "user_id": "participant id the memory is about, or empty for a general memory",
                "memory_type": "fact|relationship|interaction_summary|preference",
                "content": "first-person sentence from the character's point of view",
                "salience_score": 5,
            }
        ]
    },
    "consolidation_system_prompt_template": (
        "You are the reflective part of {persona_name}'s mind. "
        "Read a recent conversation and decide what is worth remembering in the long term.\n"
        "Memory types:\n"
        "- fact: something learned about someone\n"
        "- preference: something someone likes or dislikes\n"
        "- interaction_summary: the general outcome of the exchange\n"
        "- relationship: how your relationship with someone changed\n"
        "Write every memory in the first person, as {persona_name}. "
        "Score salience from 1 (casual detail) to 10 (major event). "
        "Only use user_id values from the participant list. "
        "Skip trivial small talk; return memories: [] when nothing noteworthy happened."
    ),
    "consolidation_user_prompt_template": (
        "Participants (name -> user_id):\n{participant_lines}\n\n"
        "--- CONVERSATION TRANSCRIPT ---\n{transcript}\n--- END OF TRANSCRIPT ---\n\n"
        "Return JSON."
    ),
}


def _cfg() -> dict[str, object]:
    return load_prompt_json("memory.json", _DEFAULTS)


def consolidation_schema_hint() -> str:
    schema = _cfg().get("consolidation_schema_hint_object")
    if not isinstance(schema, dict):
        schema = _DEFAULTS["consolidation_schema_hint_object"]
    return json.dumps(schema, ensure_ascii=False, separators=(",", ":"))


def build_consolidation_messages(
    persona_name: str,
    transcript_lines: Iterable[str],
    participants: Mapping[str, str],
) -> List[Dict[str, str]]:
    cfg = _cfg()
    participant_lines = "\n".join(f"- {label} -> {user_id}" for label, user_id in participants.items()) or "- (none)"
    transcript = "\n".join(line for line in transcript_lines if line.strip())
    return [
        {
            "role": "system",
            "content": prompt_text(cfg, "consolidation_system_prompt_template", _DEFAULTS).format(
                persona_name=persona_name,
            ),
        },
        {
            "role": "user",
            "content": prompt_text(cfg, "consolidation_user_prompt_template", _DEFAULTS).format(
                participant_lines=participant_lines,
                transcript=transcript,
            ),
        },
    ]
