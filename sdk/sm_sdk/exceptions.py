# =============================================================================
# exceptions.py - 异常定义
# =============================================================================


class UnexpectedStatusException(ValueError):
    """作业或 Endpoint 进入了非预期的终止状态"""

    def __init__(self, message, allowed_statuses, actual_status):
        self.allowed_statuses = allowed_statuses
        self.actual_status = actual_status
        super().__init__(message)
