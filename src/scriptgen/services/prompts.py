from __future__ import annotations

import json
import re
from typing import Any, Dict

DRAFT_PROMPT_TEMPLATE = """You are an AI script generator designed to create useful and practical automation scripts for users.

User Prompt: {prompt}

Create a TypeScript script that meets the requirements. Focus on creating practical, useful scripts that work immediately.
Output just the code. No explanation, no comments at the start, no "Here's the code" - just the script itself.

Remember:
1. Make sure imports are complete and correct
2. Functions should have proper TypeScript types
3. Make the script elegantly handle common edge cases
4. Export types, functions, and variables that are useful
5. Use semantic variable names that are easy to understand
6. Include proper error handling with user-friendly messages

If images or visual elements are requested, use appropriate libraries.
The script should be a complete runnable solution.

User Info: {userInfo}
"""


def build_draft_prompt(prompt: str, user_info: Dict[str, Any]) -> str:
    # Literal substitution; prompts may contain braces.
    return DRAFT_PROMPT_TEMPLATE.replace("{prompt}", prompt, 1).replace("{userInfo}", json.dumps(user_info), 1)


def enhance_prompt_with_reasoning_request(prompt: str, tag_name: str = "reasoning") -> str:
    return (
        f"{prompt.strip()}\n\n"
        f"IMPORTANT: Please include your step-by-step reasoning process inside <{tag_name}>...</{tag_name}> XML tags. \n"
        "This helps me understand your thought process. After your reasoning, provide a concise summary of your answer."
    )


_LANG_LINE_RE = re.compile(r"^(typescript|ts)\s*$", re.IGNORECASE | re.MULTILINE)
_OPEN_FENCE_RE = re.compile(r"^```(?:typescript|ts)?\s*$", re.MULTILINE)
_CLOSE_FENCE_RE = re.compile(r"^```\s*$", re.MULTILINE)
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def clean_code_fences(text: str) -> str:
    """Strip markdown fences and bare language lines from generated code."""

    cleaned = _LANG_LINE_RE.sub("", text)
    cleaned = _OPEN_FENCE_RE.sub("", cleaned)
    cleaned = _CLOSE_FENCE_RE.sub("", cleaned)
    cleaned = _BLANK_RUN_RE.sub("\n\n", cleaned)
    return cleaned.strip()
