"""工具系统：定义 (definitions)、分发执行 (executor) 与内置工具 (builtin)。"""
