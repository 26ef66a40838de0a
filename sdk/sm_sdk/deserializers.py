# =============================================================================
# deserializers.py - 推理响应反序列化
# =============================================================================
# Predictor 把 InvokeEndpoint 返回的 Body 流转换成 Python 对象，
# ACCEPT 作为 Accept 请求头
#
# 除 StreamDeserializer 外，读取后都会关闭流
# =============================================================================

import abc
import codecs
import csv
import io
import json

import numpy as np

from .record import read_records


class BaseDeserializer(abc.ABC):
    """反序列化器基类，子类实现 deserialize 和 ACCEPT"""

    @abc.abstractmethod
    def deserialize(self, stream, content_type):
        """
        Args:
            stream: botocore.response.StreamingBody 或其他可读流
            content_type: 响应的 MIME 类型
        """

    @property
    @abc.abstractmethod
    def ACCEPT(self):
        """可接受的 MIME 类型元组"""


class SimpleBaseDeserializer(BaseDeserializer):
    """构造时指定 accept 的反序列化器基类"""

    def __init__(self, accept="*/*"):
        self.accept = accept

    @property
    def ACCEPT(self):
        if isinstance(self.accept, str):
            return (self.accept,)
        return self.accept


class StringDeserializer(SimpleBaseDeserializer):
    """解码为字符串"""

    def __init__(self, encoding: str = "UTF-8", accept="application/json"):
        super().__init__(accept=accept)
        self.encoding = encoding

    def deserialize(self, stream, content_type):
        try:
            return stream.read().decode(self.encoding)
        finally:
            stream.close()


class BytesDeserializer(SimpleBaseDeserializer):
    """读取为 bytes"""

    def deserialize(self, stream, content_type):
        try:
            return stream.read()
        finally:
            stream.close()


class CSVDeserializer(SimpleBaseDeserializer):
    """解析 CSV 为二维字符串列表"""

    def __init__(self, encoding: str = "utf-8", accept="text/csv"):
        super().__init__(accept=accept)
        self.encoding = encoding

    def deserialize(self, stream, content_type):
        try:
            decoded_string = stream.read().decode(self.encoding)
            return list(csv.reader(decoded_string.splitlines()))
        finally:
            stream.close()


class StreamDeserializer(SimpleBaseDeserializer):
    """
    直接返回 (stream, content_type)

    调用方负责读取和关闭流
    """

    def deserialize(self, stream, content_type):
        return stream, content_type


class NumpyDeserializer(SimpleBaseDeserializer):
    """
    解析为 numpy 数组

    支持 text/csv、application/json、application/x-npy
    """

    def __init__(self, dtype=None, accept="application/x-npy", allow_pickle: bool = True):
        super().__init__(accept=accept)
        self.dtype = dtype
        self.allow_pickle = allow_pickle

    def deserialize(self, stream, content_type):
        """
        Raises:
            ValueError: 不支持的 content_type
        """
        try:
            if content_type == "text/csv":
                return np.genfromtxt(
                    codecs.getreader("utf-8")(stream), delimiter=",", dtype=self.dtype
                )
            if content_type == "application/json":
                return np.array(json.load(codecs.getreader("utf-8")(stream)), dtype=self.dtype)
            if content_type == "application/x-npy":
                return np.load(io.BytesIO(stream.read()), allow_pickle=self.allow_pickle)
        finally:
            stream.close()

        raise ValueError(f"{type(self).__name__} cannot read content type {content_type}.")


class JSONDeserializer(SimpleBaseDeserializer):
    """解析 JSON"""

    def __init__(self, accept="application/json"):
        super().__init__(accept=accept)

    def deserialize(self, stream, content_type):
        try:
            return json.load(codecs.getreader("utf-8")(stream))
        finally:
            stream.close()


class JSONLinesDeserializer(SimpleBaseDeserializer):
    """解析 JSON Lines 为对象列表"""

    def __init__(self, accept="application/jsonlines"):
        super().__init__(accept=accept)

    def deserialize(self, stream, content_type):
        try:
            body = stream.read().decode("utf-8")
            lines = body.rstrip().split("\n")
            return [json.loads(line) for line in lines]
        finally:
            stream.close()


class RecordDeserializer(SimpleBaseDeserializer):
    """解析 protobuf RecordIO 为 Record 列表（内置算法的推理响应）"""

    def __init__(self, accept="application/x-recordio-protobuf"):
        super().__init__(accept=accept)

    def deserialize(self, stream, content_type):
        try:
            return read_records(stream)
        finally:
            stream.close()
