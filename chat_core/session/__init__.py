"""会话层：SessionEngine 状态机与取消标记。

- engine: SessionEngine、SessionState、SessionListener。
- cancel: CancelToken。
"""
