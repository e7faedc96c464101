"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取伴侣角色的 system prompt，
用于构造 GenerationContext.system_prompt。
"""

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


@lru_cache(maxsize=None)
def load_system_prompt(locale: str = "en") -> str:
    fname = PROMPTS_DIR / locale / "companion_system.md"
    return fname.read_text(encoding="utf-8").strip()
