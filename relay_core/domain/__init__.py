"""领域层模型与协议。

包含：
- models: Message / ClientRequest / RelayEvent / StreamState 模型。
- history: 持久化后端与备份存储的协议抽象。
- exceptions: 封闭的业务异常分类。
"""
