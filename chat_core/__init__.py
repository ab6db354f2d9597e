"""CleanLLM Chat Core 顶层包。

该包提供本地大模型多会话聊天的推理编排核心，
包括配置加载、领域模型、llama.cpp 引擎加载与 GPU→CPU 回退、
上下文预算、会话绑定、单飞生成流水线、事件通道与 JSON 持久化存储。
"""

from chat_core.orchestration import Orchestrator, compute_budget

__all__ = ["Orchestrator", "compute_budget"]
