"""领域层模型与协议。

包含：
- models: Message / EngineState / SamplingParams / GenerationEvent 等模型。
- conversation: 会话实体、RecordStore 与 ConversationStore 抽象。
- exceptions: 业务异常类型定义。
"""
