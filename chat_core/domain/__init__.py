"""领域层模型与协议。

包含：
- models: Conversation / Message / BackendProfile / ChangeRecord 等数据结构。
- codec: 领域对象与 JSON 兼容 dict 的互相转换。
- collaborators: 远端存储、本地存储、身份等外部协作方协议。
- exceptions: 业务异常类型定义。
"""
