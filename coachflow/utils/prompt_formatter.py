"""
Prompt Formatter - Chat prompt layout per model family

Every model call in coachflow is a (system, user) pair: the system prompt
carries the coach persona and the schema instructions, the user prompt
carries the conversation and the latest message. This module turns that
pair into the single string the causal LM expects.

Resolution order:
1. The tokenizer's own chat template, when it ships one
2. A hand-written layout for a recognised model family
3. Plain concatenation

Mistral-family templates raise on a "system" role, so for those families
the system prompt is folded into the user turn before templating.
"""

import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

METHOD_TEMPLATE = "tokenizer_template"
METHOD_MANUAL = "manual"
METHOD_NONE = "none"

# (marker, family), checked in order; "llama-3" must win over "llama"
FAMILY_MARKERS = (
    (("llama-3", "llama3"), "llama-3"),
    (("llama-2", "llama2"), "llama-2"),
    (("llama",), "llama"),
    (("mixtral",), "mixtral"),
    (("mistral",), "mistral"),
    (("zephyr",), "zephyr"),
    (("phi",), "phi"),
)

GENERIC_FAMILY = "generic"


def detect_model_family(model_name: str) -> str:
    """
    Map a Hugging Face model id to a prompt family.

    >>> detect_model_family("meta-llama/Meta-Llama-3-8B-Instruct")
    'llama-3'
    >>> detect_model_family("gpt2")
    'generic'
    """
    lowered = model_name.lower()
    for markers, family in FAMILY_MARKERS:
        if any(marker in lowered for marker in markers):
            return family
    return GENERIC_FAMILY


def _join(system: str, user: str) -> str:
    return f"{system}\n\n{user}" if system else user


def _inst_layout(system: str, user: str) -> str:
    return f"[INST] {_join(system, user)} [/INST]"


def _llama3_layout(system: str, user: str) -> str:
    turns = [("system", system), ("user", user)] if system else [("user", user)]
    body = "".join(
        f"<|start_header_id|>{role}<|end_header_id|>\n\n{content}<|eot_id|>"
        for role, content in turns
    )
    return f"<|begin_of_text|>{body}<|start_header_id|>assistant<|end_header_id|>\n\n"


def _zephyr_layout(system: str, user: str) -> str:
    head = f"<|system|>\n{system}\n" if system else ""
    return f"{head}<|user|>\n{user}\n<|assistant|>\n"


def _phi_layout(system: str, user: str) -> str:
    head = f"<|system|>\n{system}<|end|>\n" if system else ""
    return f"{head}<|user|>\n{user}<|end|>\n<|assistant|>\n"


class PromptFormatter:
    """Lay out (system, user) prompt pairs for one model"""

    # Families whose chat templates reject a system role
    NO_SYSTEM_ROLE = frozenset({"mistral", "mixtral"})

    LAYOUTS = {
        "mistral": _inst_layout,
        "mixtral": _inst_layout,
        "llama": _inst_layout,
        "llama-2": _inst_layout,
        "llama-3": _llama3_layout,
        "zephyr": _zephyr_layout,
        "phi": _phi_layout,
    }

    def __init__(self, model_name: str, tokenizer=None):
        """
        Args:
            model_name: Hugging Face model id (used for family detection)
            tokenizer: Loaded tokenizer; its chat_template is preferred when set
        """
        self.model_name = model_name
        self.tokenizer = tokenizer
        self.model_family = detect_model_family(model_name)
        self.has_chat_template = getattr(tokenizer, 'chat_template', None) is not None

        method = self.method
        if method == METHOD_NONE:
            logger.warning(f"{model_name}: no chat template and unknown family, prompts are concatenated")
        else:
            logger.info(f"{model_name}: prompt layout via {method} (family={self.model_family})")

    @property
    def method(self) -> str:
        if self.has_chat_template:
            return METHOD_TEMPLATE
        if self.model_family in self.LAYOUTS:
            return METHOD_MANUAL
        return METHOD_NONE

    def format_chat(self, system_prompt: Optional[str], user_prompt: str) -> str:
        """
        Build the generation prompt for one call.

        A failing tokenizer template (e.g. "Conversation roles must
        alternate") drops through to the family layout.

        Args:
            system_prompt: Persona and instructions, may be empty or None
            user_prompt: Conversation context and the latest message

        Returns:
            str: Prompt text ending where the assistant reply starts

        Examples:
            >>> PromptFormatter("mistralai/Mistral-7B-Instruct-v0.2").format_chat("Be brief.", "What is 2+2?")
            '[INST] Be brief.\\n\\nWhat is 2+2? [/INST]'
        """
        system = system_prompt or ""

        if self.has_chat_template:
            try:
                return self.tokenizer.apply_chat_template(
                    self.chat_messages(system, user_prompt),
                    tokenize=False,
                    add_generation_prompt=True
                )
            except Exception as e:
                logger.warning(f"Chat template failed for {self.model_name} ({e}); using {self.model_family} layout")

        layout = self.LAYOUTS.get(self.model_family)
        if layout is None:
            return _join(system, user_prompt)
        return layout(system, user_prompt)

    def chat_messages(self, system: str, user: str) -> List[Dict[str, str]]:
        """Role/content messages for apply_chat_template."""
        if system and self.model_family not in self.NO_SYSTEM_ROLE:
            return [{"role": "system", "content": system}, {"role": "user", "content": user}]
        return [{"role": "user", "content": _join(system, user)}]

    def get_info(self) -> dict:
        return {
            "model_name": self.model_name,
            "model_family": self.model_family,
            "has_chat_template": self.has_chat_template,
            "formatting_method": self.method,
        }
