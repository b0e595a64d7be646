"""
model_client.py

OpenAI-compatible vision-language model client used by the agent loop.

predict() sends the system prompt, the conversation history, the latest
screenshots (as data-URI image parts) and any user-provided images, and
returns the raw prediction text for parse_prediction().
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from openai import OpenAI

from action_space import MANUAL
from agent_env import _env_float, _env_int, _env_str, setup_logger

logger = setup_logger("VLMClient", "AGENT_LOG_LEVEL")


_LANGUAGE_NAMES = {"en": "English", "zh": "Chinese"}


def build_system_prompt(manual: Optional[Dict[str, List[str]]] = None, language: str = "en") -> str:
    actions = "\n".join((manual or MANUAL)["ACTION_SPACES"])
    lang = _LANGUAGE_NAMES.get((language or "en").lower(), "English")
    return (
        "You are a GUI agent. You are given a task and your action history, with screenshots. "
        "You need to perform the next action to complete the task.\n\n"
        "## Output Format\n"
        "```\n"
        "Thought: ...\n"
        "Action: ...\n"
        "```\n\n"
        "## Action Space\n"
        f"{actions}\n\n"
        "## Note\n"
        "- Coordinates are in a 0-1000 range relative to the screenshot: "
        "start_box='[x1, y1, x2, y2]'.\n"
        f"- Use {lang} in `Thought` part.\n"
        "- Write a small plan and finally summarize your next action (with its target element) in one sentence in `Thought` part.\n"
        "- Output exactly one action per turn."
    )


def _image_part(b64: str) -> Dict[str, Any]:
    url = b64 if b64.startswith("data:") else f"data:image/jpeg;base64,{b64}"
    return {"type": "image_url", "image_url": {"url": url}}


class VLMClient:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        client: Any = None,
    ):
        self.model = model or _env_str("VLM_MODEL_NAME", "")
        self.system_prompt = system_prompt or build_system_prompt()
        self.max_tokens = max_tokens if max_tokens is not None else _env_int("VLM_MAX_TOKENS", 1000)
        self.temperature = temperature if temperature is not None else _env_float("VLM_TEMPERATURE", 0.0)
        self.client = client or OpenAI(
            base_url=base_url or _env_str("VLM_BASE_URL", "") or None,
            api_key=api_key or _env_str("VLM_API_KEY", "") or "EMPTY",
        )

    def build_messages(
        self,
        instruction: str,
        screenshots: Sequence[str],
        history: Sequence[Dict[str, Any]],
        images: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        user_content: List[Dict[str, Any]] = [{"type": "text", "text": instruction}]
        for img in images or []:
            user_content.append(_image_part(img))

        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": user_content},
        ]
        for h in history:
            role = "assistant" if h.get("from") == "gpt" else "user"
            messages.append({"role": role, "content": str(h.get("value") or "")})

        if screenshots:
            messages.append({"role": "user", "content": [_image_part(s) for s in screenshots]})
        return messages

    def predict(
        self,
        instruction: str,
        screenshots: Sequence[str],
        history: Sequence[Dict[str, Any]],
        *,
        auth_headers: Optional[Dict[str, str]] = None,
        images: Optional[Sequence[str]] = None,
    ) -> str:
        messages = self.build_messages(instruction, screenshots, history, images)
        logger.debug("[infer] model=%s messages=%d screenshots=%d", self.model, len(messages), len(screenshots))

        resp = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            extra_headers=auth_headers or None,
        )
        text = (resp.choices[0].message.content or "").strip()
        logger.info("[infer] prediction chars=%d", len(text))
        return text
