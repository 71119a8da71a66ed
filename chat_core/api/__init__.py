"""对外 API：提供同步的函数接口供上层应用调用。"""
