import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

GOOD_BOY_PATTERN = re.compile(r'^\W*good\s*boy\W*$', re.IGNORECASE)

FORBIDDEN_ACTIVITIES = 'Forbidden activities involve twitter, video games and other distractions.'


def load_prompt(filename):
    """Load a prompt from the prompts directory."""
    prompt_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'prompts', filename)
    try:
        with open(prompt_path, 'r', encoding='utf-8') as f:
            return f.read().strip()
    except FileNotFoundError:
        print(f"Warning: Prompt file {filename} not found in prompts/ directory")
        return ""


def is_good_boy(message: Optional[str]) -> bool:
    """Return True if the model replied with the all-clear phrase."""
    if not message:
        return False
    return bool(GOOD_BOY_PATTERN.match(message.strip()))


def format_time_ago(then: datetime, now: Optional[datetime] = None) -> str:
    """Human readable relative time, e.g. 'a few seconds ago' or '3 minutes ago'."""
    now = now or datetime.now()
    seconds = max(0, int((now - then).total_seconds()))

    if seconds < 45:
        return "a few seconds ago"
    if seconds < 90:
        return "a minute ago"
    minutes = round(seconds / 60)
    if minutes < 45:
        return f"{minutes} minutes ago"
    if minutes < 90:
        return "an hour ago"
    hours = round(minutes / 60)
    return f"{hours} hours ago"


class NagPromptBuilder:
    """Builds the chat messages sent to the vision model for one nag.

    Prior nags are replayed as assistant turns so the model can escalate, and
    the screenshot of the most recent prior nag is attached next to the
    current one so the model can spot a screen that hasn't moved.
    """

    def __init__(self, goal, system_prompt=None):
        self.goal = goal
        self.system_prompt = system_prompt if system_prompt is not None else load_prompt('system_prompt.md')

    def user_prompt(self, has_history: bool) -> str:
        lines = [
            f"I am trying to {self.goal}.",
            "Here is my CURRENT screen (1st image) and my PREVIOUS screen (2nd image)."
            if has_history else "Here is my screen.",
            f"Look at {'them' if has_history else 'it'} and make sure I am working on my task.",
            FORBIDDEN_ACTIVITIES,
        ]
        if has_history:
            lines.append("If my CURRENT screen is very similar to the PREVIOUS screen, I might be drifting off!")
        lines.append('If I am doing well, say EXACTLY "Good boy".')
        lines.append("Otherwise reprimand me. Take into account previous warnings and times, and escalate as needed.")
        return '\n'.join(lines)

    def build_messages(self, history, screenshot_encoded: str,
                       now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or datetime.now()
        records = [record for record in history if record.text]

        messages: List[Dict[str, Any]] = [{
            "role": "system",
            "content": self.system_prompt
        }]

        for record in records:
            messages.append({
                "role": "assistant",
                "content": f"[{format_time_ago(record.date, now)}] {record.text}"
            })

        content: List[Dict[str, Any]] = [{
            "type": "image_url",
            "image_url": {"url": screenshot_encoded}
        }]
        if records:
            content.append({
                "type": "image_url",
                "image_url": {"url": records[-1].screenshot_encoded}
            })
        content.append({
            "type": "text",
            "text": self.user_prompt(bool(records))
        })

        messages.append({
            "role": "user",
            "content": content
        })
        return messages
