"""提示词加载与构造工具。

提示词文本按语言(locale) 存放在 prompts/<locale>/ 目录下，
这里负责读取模板并拼出 Gateway 发送的 ChatRequest。
"""

from functools import lru_cache
from pathlib import Path
from typing import Sequence

from explainer_core.domain.models import ChatMessage, ChatRequest, CodingSession


PROMPTS_DIR = Path(__file__).resolve().parent

# 学习建议只参考最近的若干次记录
RECENT_SESSIONS = 10


@lru_cache(maxsize=None)
def load_prompt(name: str, locale: str = "en") -> str:
    """按名称加载提示词文本，例如 "code_analyzer_system"。"""

    fname = PROMPTS_DIR / locale / f"{name}.md"
    return fname.read_text(encoding="utf-8").strip()


def build_user_turn(code: str, language: str) -> str:
    return f"Please analyze this {language} code:\n\n```{language}\n{code}\n```"


def build_analysis_request(code: str, language: str, max_tokens: int, temperature: float) -> ChatRequest:
    """固定的系统指令 + 以语言标记围起来的代码。"""

    return ChatRequest(
        messages=[
            ChatMessage(role="system", content=load_prompt("code_analyzer_system")),
            ChatMessage(role="user", content=build_user_turn(code, language)),
        ],
        max_tokens=max_tokens,
        temperature=temperature,
    )


def build_insights_prompt(history: Sequence[CodingSession]) -> str:
    languages = list(dict.fromkeys(item.language for item in history))
    recent = list(history)[-RECENT_SESSIONS:]
    recent_topics = "\n".join(
        f"{i}. {item.language}: {item.topic or 'General analysis'}"
        for i, item in enumerate(recent, start=1)
    )
    return load_prompt("coding_insights").format(
        total_sessions=len(history),
        languages=", ".join(languages),
        recent_languages=", ".join(item.language for item in recent),
        recent_topics=recent_topics,
    )


def build_insights_request(history: Sequence[CodingSession]) -> ChatRequest:
    return ChatRequest(
        messages=[
            ChatMessage(role="system", content=load_prompt("coding_mentor_system")),
            ChatMessage(role="user", content=build_insights_prompt(history)),
        ],
        max_tokens=1500,
        temperature=0.8,
    )


def build_connection_test_request() -> ChatRequest:
    return ChatRequest(
        messages=[ChatMessage(role="user", content=load_prompt("connection_test"))],
        max_tokens=20,
        temperature=0.1,
    )
