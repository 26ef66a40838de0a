# =============================================================================
# parameter.py - 超参数调优的取值范围
# =============================================================================

import json

from .utils import to_string


class ParameterRange:
    """
    连续 / 整数范围的基类

    scaling_type: Auto / Linear / Logarithmic / ReverseLogarithmic
    """

    all_types = ("Continuous", "Categorical", "Integer")
    range_type = None

    def __init__(self, min_value, max_value, scaling_type: str = "Auto"):
        self.min_value = min_value
        self.max_value = max_value
        self.scaling_type = scaling_type

    def is_valid(self, value) -> bool:
        return self.min_value <= value <= self.max_value

    @classmethod
    def cast_to_type(cls, value):
        return float(value)

    def as_tuning_range(self, name: str) -> dict:
        """HyperParameterTuningJobConfig.ParameterRanges 中的一项"""
        return {
            "Name": name,
            "MinValue": to_string(self.min_value),
            "MaxValue": to_string(self.max_value),
            "ScalingType": self.scaling_type,
        }


class ContinuousParameter(ParameterRange):
    """
    Example:
        ContinuousParameter(0.01, 0.2, scaling_type="Logarithmic")
    """

    range_type = "Continuous"


class IntegerParameter(ParameterRange):
    range_type = "Integer"

    @classmethod
    def cast_to_type(cls, value):
        return int(value)


class CategoricalParameter(ParameterRange):
    """
    离散取值，值统一转换为字符串

    Example:
        CategoricalParameter(["random", "kmeans++"])
    """

    range_type = "Categorical"

    def __init__(self, values):
        if isinstance(values, list):
            self.values = [to_string(v) for v in values]
        else:
            self.values = [to_string(values)]

    def as_tuning_range(self, name: str) -> dict:
        return {"Name": name, "Values": self.values}

    def as_json_range(self, name: str) -> dict:
        """框架 Estimator 的超参数是 JSON 编码的，取值也需要 JSON 编码"""
        return {"Name": name, "Values": [json.dumps(v) for v in self.values]}

    def is_valid(self, value) -> bool:
        return value in self.values

    @classmethod
    def cast_to_type(cls, value):
        return str(value)
