"""系统提示词加载与渲染。

提示词模板以 Markdown 文件存放在 prompts/<locale>/ 下，
占位符使用 str.format 语法，例如 {assistant_name}。
"""

from pathlib import Path
from typing import Any, Mapping, Optional

from chat_core.domain.exceptions import ValidationError


PROMPTS_DIR = Path(__file__).resolve().parent

DEFAULT_PROMPT_VARS = {
    "assistant_name": "assistant",
    "language": "the user's language",
}


def load_system_prompt(name: str = "assistant", locale: str = "en") -> str:
    """按名称和语言读取提示词模板原文。"""

    fname = PROMPTS_DIR / locale / f"{name}_system.md"
    if not fname.exists():
        raise ValidationError(code="PROMPT_NOT_FOUND", message=str(fname))
    return fname.read_text(encoding="utf-8")


def render_prompt(template: str, variables: Optional[Mapping[str, Any]] = None) -> str:
    """用变量渲染模板，缺少变量时抛出 ValidationError。"""

    values = dict(DEFAULT_PROMPT_VARS)
    values.update(variables or {})
    try:
        return template.format(**values).strip()
    except KeyError as e:
        raise ValidationError(code="PROMPT_VARIABLE_MISSING", message=f"missing prompt variable {e}")
