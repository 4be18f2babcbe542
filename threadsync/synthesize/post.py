"""Build the remote post body and the derived writing prompt for a thread."""

from __future__ import annotations

from html import escape

from threadsync.errors import ValidationError
from threadsync.models import Message, PostContent
from threadsync.synthesize.transcript import extract_title

PROMPT_INSTRUCTIONS = [
    "Create an engaging blog post title",
    "Write a well-structured blog post with proper paragraphs",
    "Include relevant headings if appropriate",
    "Maintain a professional yet approachable tone",
    "Incorporate insights from all the replies in the thread",
    "Format the output in HTML suitable for WordPress",
]


def _e(text: str) -> str:
    """Escape text for HTML and keep line breaks."""
    return escape(text or "").replace("\n", "<br>")


def format_post(messages: list[Message]) -> PostContent:
    """Root message as the lead paragraph, replies as reply blocks."""
    if not messages:
        raise ValidationError("No messages to format")

    parts = []
    for index, msg in enumerate(messages):
        if index == 0:
            parts.append(f"<p>{_e(msg.text)}</p>")
        else:
            parts += [
                '<div class="thread-reply">',
                "<p><strong>Reply:</strong></p>",
                f"<p>{_e(msg.text)}</p>",
                "</div>",
            ]
    return PostContent(
        title=extract_title(messages[0].text),
        body="\n".join(parts) + "\n",
    )


def build_prompt(messages: list[Message]) -> str:
    """Prompt asking an LLM to turn the thread into a blog post."""
    if not messages:
        raise ValidationError("No messages to generate prompt from")

    lines = [
        "Please write a professional blog post based on the following "
        "Slack thread conversation:",
        "",
        "=== THREAD START ===",
        "",
    ]
    for index, msg in enumerate(messages):
        label = "Original Post" if index == 0 else f"Reply {index}"
        lines += [f"{label}:", msg.text, ""]
    lines += ["=== THREAD END ===", "", "Instructions:"]
    lines += [f"{i}. {step}" for i, step in enumerate(PROMPT_INSTRUCTIONS, 1)]
    return "\n".join(lines) + "\n"
