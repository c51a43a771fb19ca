"""领域层模型与协议。

包含：
- models: ChatMessage / StreamFragment / SessionEvent 模型。
- storage: CredentialStore 与 HistoryStore 抽象。
- exceptions: 业务异常类型定义。
"""
