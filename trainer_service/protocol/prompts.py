# trainer_service/protocol/prompts.py
"""
System prompt construction with directive catalog injection.

Builds system prompts that tell the model:
1. How to emit directives ([TOOL_CALL: name(key: value, ...)])
2. Which directives exist (names, descriptions, parameters)
3. The current time, so relative dates resolve correctly
"""
import datetime
from typing import Any, Dict, List, Optional

from trainer_service.core.executor_registry import ExecutorRegistry


def _render_catalog(entries: List[Dict[str, Any]]) -> str:
    """
    Format:
      • directive_name: Short description
        - param (type, required/optional): description
    """
    lines: List[str] = []
    for entry in sorted(entries, key=lambda e: e["name"]):
        lines.append(f"• {entry['name']}: {entry.get('description') or 'No description provided.'}")
        for p in entry.get("parameters", []):
            req = "required" if p.get("required") else "optional"
            desc = (p.get("description") or "").strip()
            if desc:
                lines.append(f"  - {p['name']} ({p.get('type', 'string')}, {req}): {desc}")
            else:
                lines.append(f"  - {p['name']} ({p.get('type', 'string')}, {req})")
    return "\n".join(lines)


def collect_catalog(registry: ExecutorRegistry) -> List[Dict[str, Any]]:
    entries: List[Dict[str, Any]] = []
    for executor in registry.executors():
        catalog = getattr(executor, "catalog", None)
        if callable(catalog):
            entries.extend(e for e in catalog() if registry.get(e["name"]) is executor)
        else:
            entries.extend({"name": n, "description": "", "parameters": []} for n in executor.supported_names()
                           if registry.get(n) is executor)
    return entries


def build_system_prompt_with_directives(
    registry: ExecutorRegistry,
    base_instruction: str = "You are a supportive, knowledgeable training coach.",
) -> str:
    """
    Build a system prompt that includes:
    - Base instruction
    - Directive catalog with descriptions and parameters
    - Directive format instructions

    Args:
        registry: Registry holding every executor the model may call
        base_instruction: Base assistant behavior description

    Returns:
        Complete system prompt string
    """
    if not len(registry):
        return base_instruction

    catalog = _render_catalog(collect_catalog(registry))

    prompt = f"""{base_instruction}

You can act on the user's behalf with these tools:

{catalog}

To call a tool, write it inline in your reply using EXACTLY this format:
[TOOL_CALL: tool_name]
[TOOL_CALL: tool_name(param1: "value1", param2: "value2")]

Quote values that contain commas or colons and escape embedded quotes as \\".
Pass JSON documents (such as workout_json) as one quoted string with every inner quote escaped.
You may call several tools in one reply; they run in the order written.
The tool calls are removed before the user sees your message, and the results are sent back to you.
After you receive the results, answer the user naturally without repeating the tool syntax.
Only use tools when they are necessary.
""".strip()

    return prompt


def with_temporal_context(prompt: str, now: Optional[datetime.datetime] = None) -> str:
    """Append the current date/time so 'today' and 'tomorrow' resolve correctly."""
    now = now or datetime.datetime.now().astimezone()
    stamp = now.strftime("%A, %B %d, %Y at %I:%M %p %Z").strip()
    return f"{prompt}\n\n[TEMPORAL_CONTEXT]\nCurrent time: {stamp}\nToday's date: {now.date().isoformat()}"
