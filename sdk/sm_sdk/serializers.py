# =============================================================================
# serializers.py - 推理请求序列化
# =============================================================================
# Predictor 调用 InvokeEndpoint 前把数据转换成请求体，
# CONTENT_TYPE 作为 ContentType 请求头
# =============================================================================

import abc
import csv
import io
import json
from collections.abc import Iterable

import numpy as np

from .record import write_numpy_to_dense_tensor


class BaseSerializer(abc.ABC):
    """序列化器基类，子类实现 serialize 和 CONTENT_TYPE"""

    @abc.abstractmethod
    def serialize(self, data):
        """把数据序列化为请求体"""

    @property
    @abc.abstractmethod
    def CONTENT_TYPE(self):
        """请求的 MIME 类型"""


class SimpleBaseSerializer(BaseSerializer):
    """构造时指定 content_type 的序列化器基类"""

    def __init__(self, content_type: str = "application/json"):
        """
        Raises:
            ValueError: content_type 不是字符串
        """
        if not isinstance(content_type, str):
            raise ValueError(
                "content_type must be a string specifying the MIME type of the data sent in "
                f"requests: e.g. 'application/json', 'text/csv', etc. Got {content_type}"
            )
        self.content_type = content_type

    @property
    def CONTENT_TYPE(self):
        return self.content_type


class CSVSerializer(SimpleBaseSerializer):
    """
    序列化为 CSV 字符串

    二维数据（嵌套列表、二维数组）每行一条记录。

    Example:
        CSVSerializer().serialize([[1, 2], [3, 4]])  # -> "1,2\\n3,4"
    """

    def __init__(self, content_type: str = "text/csv"):
        super().__init__(content_type=content_type)

    def serialize(self, data):
        if hasattr(data, "read"):
            return data.read()

        is_mutable_sequence_like = self._is_sequence_like(data) and hasattr(data, "__setitem__")
        has_multiple_rows = len(data) > 0 and self._is_sequence_like(data[0])

        if is_mutable_sequence_like and has_multiple_rows:
            return "\n".join(self._serialize_row(row) for row in data)

        return self._serialize_row(data)

    def _serialize_row(self, data) -> str:
        if isinstance(data, str):
            return data

        if isinstance(data, np.ndarray):
            data = np.ndarray.flatten(data)

        if hasattr(data, "__len__"):
            if len(data) == 0:
                raise ValueError("Cannot serialize empty array")
            csv_buffer = io.StringIO()
            csv.writer(csv_buffer, delimiter=",").writerow(data)
            return csv_buffer.getvalue().rstrip("\r\n")

        raise ValueError(f"Unable to handle input format: {type(data)}")

    @staticmethod
    def _is_sequence_like(data) -> bool:
        return hasattr(data, "__iter__") and hasattr(data, "__getitem__")


class NumpySerializer(SimpleBaseSerializer):
    """序列化为 .npy 格式的字节"""

    def __init__(self, dtype=None, content_type: str = "application/x-npy"):
        super().__init__(content_type=content_type)
        self.dtype = dtype

    def serialize(self, data) -> bytes:
        if isinstance(data, np.ndarray):
            if data.size == 0:
                raise ValueError("Cannot serialize empty array.")
            return self._serialize_array(data)

        if isinstance(data, list):
            if len(data) == 0:
                raise ValueError("Cannot serialize empty array.")
            return self._serialize_array(np.array(data, self.dtype))

        # 文件对象视为已经是 npy 格式
        if hasattr(data, "read"):
            return data.read()

        return self._serialize_array(np.array(data))

    @staticmethod
    def _serialize_array(array: np.ndarray) -> bytes:
        buffer = io.BytesIO()
        np.save(buffer, array)
        return buffer.getvalue()


class JSONSerializer(SimpleBaseSerializer):
    """序列化为 JSON 字符串（numpy 数组转为列表）"""

    def serialize(self, data) -> str:
        if isinstance(data, dict):
            return json.dumps(
                {
                    key: value.tolist() if isinstance(value, np.ndarray) else value
                    for key, value in data.items()
                }
            )

        if hasattr(data, "read"):
            return data.read()

        if isinstance(data, np.ndarray):
            return json.dumps(data.tolist())

        return json.dumps(data)


class IdentitySerializer(SimpleBaseSerializer):
    """原样发送数据（例如图片字节）"""

    def __init__(self, content_type: str = "application/octet-stream"):
        super().__init__(content_type=content_type)

    def serialize(self, data):
        return data


class JSONLinesSerializer(SimpleBaseSerializer):
    """序列化为 JSON Lines，每个元素一行"""

    def __init__(self, content_type: str = "application/jsonlines"):
        super().__init__(content_type=content_type)

    def serialize(self, data) -> str:
        if isinstance(data, str):
            return data

        if hasattr(data, "read"):
            return data.read()

        if isinstance(data, Iterable):
            return "\n".join(json.dumps(element) for element in data)

        raise ValueError(f"Object of type {type(data)} is not JSON Lines serializable.")


class LibSVMSerializer(SimpleBaseSerializer):
    """
    发送 LibSVM 格式文本

    数据必须已经是 <label> <index1>:<value1> ... 格式
    """

    def __init__(self, content_type: str = "text/libsvm"):
        super().__init__(content_type=content_type)

    def serialize(self, data) -> str:
        if isinstance(data, str):
            return data

        if hasattr(data, "read"):
            return data.read()

        raise ValueError(f"Unable to handle input format: {type(data)}")


class DataSerializer(SimpleBaseSerializer):
    """读取文件路径的原始字节，或原样发送 bytes"""

    def __init__(self, content_type: str = "file-path/raw-bytes"):
        super().__init__(content_type=content_type)

    def serialize(self, data) -> bytes:
        if isinstance(data, str):
            try:
                with open(data, "rb") as data_file:
                    return data_file.read()
            except OSError as e:
                raise ValueError(f"Could not open/read file: {data}. {e}") from e

        if isinstance(data, bytes):
            return data

        raise ValueError(f"Object of type {type(data)} is not Data serializable.")


class RecordSerializer(SimpleBaseSerializer):
    """
    把 numpy 数组序列化为 protobuf RecordIO（内置算法的推理格式）

    一维数组视为单行
    """

    def __init__(self, content_type: str = "application/x-recordio-protobuf"):
        super().__init__(content_type=content_type)

    def serialize(self, data) -> io.BytesIO:
        if len(data.shape) == 1:
            data = data.reshape(1, data.shape[0])

        if len(data.shape) != 2:
            raise ValueError(f"Expected a 1D or 2D array, but got a {len(data.shape)}D array instead.")

        buffer = io.BytesIO()
        write_numpy_to_dense_tensor(buffer, data)
        buffer.seek(0)
        return buffer
