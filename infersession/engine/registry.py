"""Model-family registry.

Maps model names to their stop strings and prompt templates. The session
never consults this table; hosts look up a profile and inject it at session
creation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SYSTEM_PLACEHOLDER = "{SYSTEM_PROMPT}"
USER_PLACEHOLDER = "{USER_MESSAGE}"

DEFAULT_SYSTEM_PROMPT = """You are a clear and focused assistant.

Aim for concise, complete answers.

Use plain language and short paragraphs.

When listing points, use brief bullet points or numbers.

Wrap up naturally once the question is fully addressed.

Keep the tone helpful and conversational."""


@dataclass(frozen=True)
class PromptTemplate:
    """A prompt layout with `{SYSTEM_PROMPT}` and `{USER_MESSAGE}` placeholders."""

    text: str

    def format(self, user: str, system: str | None = None) -> str:
        return format_prompt(self, system_prompt=system, user_message=user)

    def split(self, user: str, system: str | None = None) -> tuple[str, str]:
        """Split the formatted prompt into (system block, user block).

        The system block is everything before the user message; the user block
        is the message plus the remainder of the template. Keeping them apart
        lets the context fitter trim only the user side.
        """
        sys_text = DEFAULT_SYSTEM_PROMPT if system is None else system
        head, sep, tail = self.text.partition(USER_PLACEHOLDER)
        if not sep:
            return head.replace(SYSTEM_PLACEHOLDER, sys_text), user
        return head.replace(SYSTEM_PLACEHOLDER, sys_text), user + tail.replace(SYSTEM_PLACEHOLDER, sys_text)


@dataclass(frozen=True)
class ModelProfile:
    family: str
    stop_strings: tuple[str, ...]
    template: PromptTemplate


_LLAMA3 = PromptTemplate(
    "<|begin_of_text|><|start_header_id|>system<|end_header_id|>\n"
    "{SYSTEM_PROMPT}<|eot_id|>\n"
    "<|start_header_id|>user<|end_header_id|>\n"
    "{USER_MESSAGE}<|eot_id|>\n"
    "<|start_header_id|>assistant<|end_header_id|>\n"
)
_CHATML = PromptTemplate(
    "<|im_start|>system\n"
    "{SYSTEM_PROMPT}<|im_end|>\n"
    "<|im_start|>user\n"
    "{USER_MESSAGE}<|im_end|>\n"
    "<|im_start|>assistant\n"
)
_GEMMA = PromptTemplate(
    "<start_of_turn>system\n"
    "{SYSTEM_PROMPT}<end_of_turn>\n"
    "<start_of_turn>user\n"
    "{USER_MESSAGE}<end_of_turn>\n"
    "<start_of_turn>model\n"
)
_LLAMA2 = PromptTemplate("<s>[INST] <<SYS>>\n{SYSTEM_PROMPT}\n<</SYS>>\n\n{USER_MESSAGE} [/INST]\n")
_MISTRAL = PromptTemplate("<s>[INST] {SYSTEM_PROMPT}\n\n{USER_MESSAGE} [/INST]\n")
_DEFAULT_TEMPLATE = PromptTemplate("### System:\n{SYSTEM_PROMPT}\n\n### User:\n{USER_MESSAGE}\n\n### Assistant:\n")

_LLAMA2_STOPS = ("</s>", "[INST]", "[/INST]", "<<SYS>>", "<</SYS>>")
_CHATML_STOPS = ("<|im_end|>", "<|endoftext|>")
_CLAUDE_STOPS = ("Human:", "Assistant:", "\n\nHuman:", "\n\nAssistant:")
_COHERE_STOPS = ("<|END_OF_TURN_TOKEN|>", "<|USER_TOKEN|>", "<|CHATBOT_TOKEN|>")

# Registry mapping family names to (stop strings, template)
_FAMILY_REGISTRY: dict[str, tuple[tuple[str, ...], PromptTemplate]] = {
    "llama-3": (("<|eot_id|>", "<|end_of_text|>"), _LLAMA3),
    "llama-3.1": (("<|eot_id|>", "<|end_of_text|>"), _LLAMA3),
    "llama-3.2": (("<|eot_id|>", "<|end_of_text|>"), _LLAMA3),
    "llama-2": (_LLAMA2_STOPS, _LLAMA2),
    "llama": (_LLAMA2_STOPS, _LLAMA2),
    "phi": (_CHATML_STOPS, _CHATML),
    "phi-4": (_CHATML_STOPS, _CHATML),
    "qwen": (_CHATML_STOPS, _CHATML),
    "qwen2.5": (_CHATML_STOPS, _CHATML),
    "qwen3": (_CHATML_STOPS, _CHATML),
    "gemma": (("<end_of_turn>",), _GEMMA),
    "gemma-2": (("<end_of_turn>",), _GEMMA),
    "gemma-3": (("<end_of_turn>",), _GEMMA),
    "gemma-3n": (("<end_of_turn>",), _GEMMA),
    "mistral": (("</s>", "[INST]", "[/INST]"), _MISTRAL),
    "openai": (_CHATML_STOPS, _DEFAULT_TEMPLATE),
    "anthropic": (_CLAUDE_STOPS, _DEFAULT_TEMPLATE),
    "cohere": (_COHERE_STOPS, _DEFAULT_TEMPLATE),
    "alpaca": (("### Input:", "### Response:", "### Instruction:"), _DEFAULT_TEMPLATE),
    "vicuna": (("USER:", "ASSISTANT:", "SYSTEM:"), _DEFAULT_TEMPLATE),
    "wizard": (("### Instruction:", "### Response:"), _DEFAULT_TEMPLATE),
    "orca": (("<|im_start|>", "<|im_end|>"), _DEFAULT_TEMPLATE),
    "default": (("</s>", "<|endoftext|>", "\n\n"), _DEFAULT_TEMPLATE),
}

# Ordered detection rules: most specific first. Each entry is
# (family, substrings); the first rule with any substring in the name wins.
_DETECTION_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("llama-3.2", ("llama-3.2", "llama_3.2")),
    ("llama-3.1", ("llama-3.1", "llama_3.1")),
    ("llama-3", ("llama-3", "llama_3")),
    ("llama-2", ("llama-2", "llama_2")),
    ("llama", ("llama", "meta")),
    ("phi-4", ("phi-4", "phi_4")),
    ("phi", ("phi", "microsoft")),
    ("qwen3", ("qwen3", "qwen_3")),
    ("qwen2.5", ("qwen2.5", "qwen_2.5")),
    ("qwen", ("qwen",)),
    ("gemma-3n", ("gemma-3n", "gemma_3n")),
    ("gemma-3", ("gemma-3", "gemma_3")),
    ("gemma-2", ("gemma-2", "gemma_2")),
    ("gemma", ("gemma", "google")),
    ("mistral", ("mistral", "mixtral")),
    ("anthropic", ("claude", "anthropic")),
    ("openai", ("gpt", "openai")),
    ("cohere", ("command", "cohere")),
    ("alpaca", ("alpaca",)),
    ("vicuna", ("vicuna",)),
    ("wizard", ("wizard",)),
    ("orca", ("orca",)),
]


def detect_model_family(model_name: str) -> str:
    """Guess the family from a model file name or repo id."""
    name = model_name.lower()
    for family, needles in _DETECTION_RULES:
        if any(n in name for n in needles):
            return family
    logger.warning("No model family matched %r; using default stop strings/template", model_name)
    return "default"


def stop_strings_for(family: str) -> tuple[str, ...]:
    entry = _FAMILY_REGISTRY.get(family) or _FAMILY_REGISTRY["default"]
    return entry[0]


def prompt_template_for(family: str) -> PromptTemplate:
    entry = _FAMILY_REGISTRY.get(family) or _FAMILY_REGISTRY["default"]
    return entry[1]


def get_model_profile(model_name: str) -> ModelProfile:
    """
    Look up stop strings and prompt template for a model.

    Args:
        model_name: Model file name, path, or repo id.

    Returns:
        The detected family's profile (the default profile when nothing matches).
    """
    family = detect_model_family(model_name)
    profile = ModelProfile(family=family, stop_strings=stop_strings_for(family), template=prompt_template_for(family))
    logger.info("model profile: family=%r stop_strings=%r", profile.family, list(profile.stop_strings))
    return profile


def register_family(
    family: str,
    stop_strings: tuple[str, ...] | list[str],
    template: PromptTemplate | str,
    *,
    match: tuple[str, ...] | list[str] = (),
) -> None:
    """
    Register (or replace) a model family.

    Args:
        family: Name of the model family.
        stop_strings: Ordered stop strings for the family.
        template: Prompt template (or its text).
        match: Lowercase substrings that identify the family in model names.
            New rules are checked before the built-in ones.
    """
    if isinstance(template, str):
        template = PromptTemplate(template)
    _FAMILY_REGISTRY[family] = (tuple(stop_strings), template)
    if match:
        _DETECTION_RULES.insert(0, (family, tuple(m.lower() for m in match)))


def list_model_families() -> list[str]:
    """Return list of registered model family names."""
    return list(_FAMILY_REGISTRY.keys())


def format_prompt(template: PromptTemplate | str, *, user_message: str, system_prompt: str | None = None) -> str:
    text = template.text if isinstance(template, PromptTemplate) else template
    system = DEFAULT_SYSTEM_PROMPT if system_prompt is None else system_prompt
    return text.replace(SYSTEM_PLACEHOLDER, system).replace(USER_PLACEHOLDER, user_message)
