"""
本文件用于封装与外部 AI 服务的交互：以 JSON 模式调用 OpenAI 兼容的对话补全接口。
主要类:
- `LLMCompletion`: 一次调用的文本与 token 统计
- `AIService`: AI 能力封装（客户端构造、鉴权错误映射、调试日志）
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from openai import APIStatusError, AsyncOpenAI

from app.core.config import Settings
from app.core.exceptions import AIConfigurationError
from app.core.logger import setup_logger

logger = setup_logger("AIService")


@dataclass
class LLMCompletion:
    text: str
    model: str
    tokens_in: int = 0
    tokens_out: int = 0


class AIService:
    """
    输入:
    - `settings`: 运行时配置（API Key、Base URL、模型、温度、超时）
    - `client`: 可注入的 `AsyncOpenAI` 客户端（测试中替换为假对象）

    输出:
    - 大模型 JSON 补全结果

    作用:
    - 每次聚类运行只调用一次模型，不做重试；鉴权失败映射为 `AIConfigurationError`
    """

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None) -> None:
        self.model = settings.NEWS_CLUSTER_MODEL
        self.temperature = settings.LLM_TEMPERATURE
        self.timeout = settings.LLM_TIMEOUT_SECONDS
        self._api_key = (settings.OPENAI_API_KEY or "").strip()
        self._base_url = (settings.OPENAI_BASE_URL or "").strip() or None
        self._client = client

    def is_configured(self) -> bool:
        return self._client is not None or bool(self._api_key)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._api_key:
                raise AIConfigurationError("未配置 OPENAI_API_KEY，无法调用聚类模型")
            self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    async def complete_json(self, prompt: str, system: str = "") -> LLMCompletion:
        """
        输入:
        - `prompt`: 用户提示词
        - `system`: 系统提示词（可选）

        输出:
        - `LLMCompletion`（文本可能不是合法 JSON，由调用方解析）

        作用:
        - 以 `response_format=json_object` 发起一次补全；温度为 None 时不传该参数
        """

        client = self._get_client()
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        params: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "response_format": {"type": "json_object"},
            "timeout": self.timeout,
        }
        if self.temperature is not None:
            params["temperature"] = self.temperature

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"🔵 [LLM 请求] 模型: {self.model}\n用户提示词: {prompt[:2000]}...")

        try:
            response = await client.chat.completions.create(**params)
        except APIStatusError as e:
            if e.status_code in (401, 403):
                logger.error(f"❌ AI 认证失败 ({e.status_code}) - API Key 无效 ({self.model}): {e}")
                raise AIConfigurationError(f"AI API Key 无效 ({self.model})") from e
            raise

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        if not content:
            logger.warning(f"⚠️ AI 返回内容为空 ({self.model})")
        elif logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"🟢 [LLM 响应] 模型: {self.model}\n内容: {content[:2000]}...")

        usage = getattr(response, "usage", None)
        return LLMCompletion(
            text=content,
            model=self.model,
            tokens_in=int(getattr(usage, "prompt_tokens", 0) or 0),
            tokens_out=int(getattr(usage, "completion_tokens", 0) or 0),
        )
