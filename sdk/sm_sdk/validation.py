# =============================================================================
# validation.py - 超参数校验谓词
# =============================================================================
# 每个函数返回一个 value -> bool 的校验函数，供 Hyperparameter 使用
# =============================================================================


def gt(minimum):
    """大于 minimum"""

    def validate(value):
        return value > minimum

    return validate


def ge(minimum):
    """大于等于 minimum"""

    def validate(value):
        return value >= minimum

    return validate


def lt(maximum):
    """小于 maximum"""

    def validate(value):
        return value < maximum

    return validate


def le(maximum):
    """小于等于 maximum"""

    def validate(value):
        return value <= maximum

    return validate


def isin(*expected):
    """取值在 expected 之中"""

    def validate(value):
        return value in expected

    return validate


def istype(expected):
    """类型为 expected"""

    def validate(value):
        return isinstance(value, expected)

    return validate
