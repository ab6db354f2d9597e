"""本地推理引擎集成层。

该包下的模块负责：
- 定义推理后端抽象接口 (base)。
- 维护模型家族与对话模板/停止序列配置 (registry)。
- 提供 llama.cpp 的加载与 GPU→CPU 回退实现 (llama_engine)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import InferenceBackend
from chat_core.providers.llama_engine import BackendFactory, EngineHandle, EngineLoader


def create_engine_loader(app_settings=None, factory: Optional[BackendFactory] = None) -> EngineLoader:
    """根据配置创建引擎加载器，默认取全局 settings 与 llama_cpp 工厂。"""

    return EngineLoader(app_settings or settings, factory=factory)


__all__ = ["InferenceBackend", "EngineHandle", "EngineLoader", "create_engine_loader"]
