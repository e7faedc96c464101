"""领域层模型与协议。

包含：
- conversation: 消息记录模型、ConversationStore 抽象与分页遍历。
- models: 生成上下文、Provider 尝试记录与编排结果模型。
- cancellation: 单轮对话的取消令牌。
- exceptions: 业务异常类型定义。
"""
