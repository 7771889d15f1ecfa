"""
localvl :: Chat Template

Renders chat messages into a prompt string with a Jinja2 template, and
inserts the vision placeholder block for multimodal prompts.
"""

import os
from typing import Dict, List, Optional

from jinja2 import Template

from localvl.core.errors import InputError

IMAGE_PAD = "<|image_pad|>"
VISION_START = "<|vision_start|>"
VISION_END = "<|vision_end|>"

# ChatML, as used by Qwen checkpoints.
CHATML_TEMPLATE = (
    "{% for message in messages %}"
    "<|im_start|>{{ message['role'] }}\n{{ message['content'] }}<|im_end|>\n"
    "{% endfor %}"
    "{% if add_generation_prompt %}<|im_start|>assistant\n{% endif %}"
)


class ChatTemplate:
    """Jinja2 chat template renderer."""

    def __init__(self, template_str: str = CHATML_TEMPLATE):
        self.template = Template(template_str)

    def apply(
        self,
        messages: List[Dict[str, str]],
        add_generation_prompt: bool = True,
    ) -> str:
        """
        Render messages into a prompt string.

        Args:
            messages: [{"role": "user", "content": "..."}, ...]
            add_generation_prompt: append assistant turn marker
        """
        return self.template.render(
            messages=messages,
            add_generation_prompt=add_generation_prompt,
        )

    @staticmethod
    def from_file(path: str) -> "ChatTemplate":
        """Load template from a .jinja file."""
        with open(path, "r", encoding="utf-8") as f:
            return ChatTemplate(f.read())


def load_chat_template(model_dir: Optional[str]) -> ChatTemplate:
    """chat_template.jinja next to the weights, else ChatML."""
    if model_dir:
        for name in ("chat_template.jinja", "chat_template.j2"):
            path = os.path.join(model_dir, name)
            if os.path.exists(path):
                return ChatTemplate.from_file(path)
    return ChatTemplate()


def format_vision_prompt(prompt: str, num_image_tokens: int) -> str:
    """
    Expand the image placeholder to `num_image_tokens` pad tokens.

    A prompt containing IMAGE_PAD once gets it expanded in place (its own
    vision start/end markers are kept); otherwise a full vision block is
    put in front of the prompt.
    """
    count = prompt.count(IMAGE_PAD)
    if count > 1:
        raise InputError(f"prompt contains {count} image placeholders, only one image is supported")
    pads = IMAGE_PAD * num_image_tokens
    if count == 1:
        return prompt.replace(IMAGE_PAD, pads)
    return f"{VISION_START}{pads}{VISION_END}{prompt}"
