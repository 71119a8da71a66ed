"""基础设施层：日志与会话存储。"""
