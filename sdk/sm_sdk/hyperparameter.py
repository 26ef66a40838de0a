# =============================================================================
# hyperparameter.py - 声明式超参数
# =============================================================================
# 在 Estimator 类上声明超参数，赋值时自动转换类型并校验
#
# Example:
#     class KMeans(AmazonAlgorithmEstimatorBase):
#         k = Hyperparameter("k", gt(1), "An integer greater-than 1", int)
# =============================================================================

import json


class Hyperparameter:
    """
    超参数描述符

    值保存在实例的 _hyperparameters 字典中，序列化时使用 name 作为键。
    """

    def __init__(self, name, validate=lambda _: True, validation_message="", data_type=str):
        """
        Args:
            name: 超参数名称（请求中的键）
            validate: 校验函数或校验函数列表
            validation_message: 校验失败时的提示
            data_type: 赋值时的类型转换函数
        """
        self.validation = validate
        self.validation_message = validation_message
        self.name = name
        self.data_type = data_type
        try:
            iter(self.validation)
        except TypeError:
            self.validation = [self.validation]

    def validate(self, value):
        """
        Raises:
            ValueError: 任一校验函数返回 False
        """
        if value is None:
            return
        for valid in self.validation:
            if not valid(value):
                error_message = f"Invalid hyperparameter value {value} for {self.name}"
                if self.validation_message:
                    error_message = f"{error_message}. Expecting: {self.validation_message}"
                raise ValueError(error_message)

    def __get__(self, obj, objtype):
        if obj is None:
            return self
        if "_hyperparameters" not in dir(obj) or self.name not in obj._hyperparameters:
            raise AttributeError(self.name)
        return obj._hyperparameters[self.name]

    def __set__(self, obj, value):
        if value is not None:
            value = self.data_type(value)
        self.validate(value)
        if "_hyperparameters" not in dir(obj):
            obj._hyperparameters = dict()
        obj._hyperparameters[self.name] = value

    def __delete__(self, obj):
        del obj._hyperparameters[self.name]

    @staticmethod
    def serialize_all(obj):
        """序列化实例上所有非 None 的超参数，值统一转为字符串"""
        if "_hyperparameters" not in dir(obj):
            return {}
        return {
            k: json.dumps(v) if isinstance(v, list) else str(v)
            for k, v in obj._hyperparameters.items()
            if v is not None
        }


def _to_bool(value):
    """字符串按 "true" / "false" 解析，其他值按真值判断"""
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1"):
            return True
        if lowered in ("false", "0"):
            return False
        raise ValueError(f"Cannot convert {value!r} to bool")
    return bool(value)


class DataTypes:
    """常用的超参数类型转换函数"""

    int = int
    float = float
    str = str
    bool = staticmethod(_to_bool)
    list = list
