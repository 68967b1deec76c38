"""提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取提示词模板，
目前只有预取闸门的 LLM 分类提示词。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


def load_prompt(name: str, locale: str = "en") -> str:
    """按名称和语言加载提示词模板文本。"""

    fname = PROMPTS_DIR / locale / f"{name}.md"
    return fname.read_text(encoding="utf-8")
