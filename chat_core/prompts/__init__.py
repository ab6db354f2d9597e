"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取 system prompt 文本，
用于初始化推理会话（不持久化到会话记录中）。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent
DEFAULT_LOCALE = "en"


def load_system_prompt(locale: str = DEFAULT_LOCALE) -> str:
    """根据语言加载系统提示词文本，未知语言回退到英文。"""

    fname = PROMPTS_DIR / locale / "chat_system.md"
    if not fname.exists():
        fname = PROMPTS_DIR / DEFAULT_LOCALE / "chat_system.md"
    return fname.read_text(encoding="utf-8").strip()
