# =============================================================================
# record.py - protobuf Record / RecordIO 编解码
# =============================================================================
# 内置算法 (KMeans, PCA, Linear Learner ...) 使用的 aialgs.data.Record 格式
#
# 每条 RecordIO 记录: magic (uint32) + 长度 (uint32) + 数据 + 补齐到 4 字节
# =============================================================================

import struct

import numpy as np
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

_PACKAGE = "aialgs.data"
_F = descriptor_pb2.FieldDescriptorProto


def _add_field(message, name, number, field_type, label=_F.LABEL_OPTIONAL, type_name=None, packed=False):
    field = message.field.add(name=name, number=number, type=field_type, label=label)
    if type_name:
        field.type_name = f".{_PACKAGE}.{type_name}"
    if packed:
        field.options.packed = True
    return field


def _add_map_field(record, name, number):
    """map<string, Value>: 嵌套的 XxxEntry 消息 + repeated 字段"""
    entry_name = f"{name.capitalize()}Entry"
    entry = record.nested_type.add(name=entry_name)
    entry.options.map_entry = True
    _add_field(entry, "key", 1, _F.TYPE_STRING)
    _add_field(entry, "value", 2, _F.TYPE_MESSAGE, type_name="Value")
    _add_field(record, name, number, _F.TYPE_MESSAGE, _F.LABEL_REPEATED, f"Record.{entry_name}")


def _build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    fdp = descriptor_pb2.FileDescriptorProto(
        name="aialgs/data/record.proto", package=_PACKAGE, syntax="proto2"
    )

    for tensor_name, value_type in (
        ("Float32Tensor", _F.TYPE_FLOAT),
        ("Float64Tensor", _F.TYPE_DOUBLE),
        ("Int32Tensor", _F.TYPE_INT32),
    ):
        tensor = fdp.message_type.add(name=tensor_name)
        _add_field(tensor, "values", 1, value_type, _F.LABEL_REPEATED, packed=True)
        _add_field(tensor, "keys", 2, _F.TYPE_UINT64, _F.LABEL_REPEATED, packed=True)
        _add_field(tensor, "shape", 3, _F.TYPE_UINT64, _F.LABEL_REPEATED, packed=True)

    bytes_message = fdp.message_type.add(name="Bytes")
    _add_field(bytes_message, "value", 1, _F.TYPE_BYTES, _F.LABEL_REPEATED)
    _add_field(bytes_message, "content_type", 2, _F.TYPE_STRING)

    value = fdp.message_type.add(name="Value")
    value.oneof_decl.add(name="value")
    for name, number, type_name in (
        ("float32_tensor", 2, "Float32Tensor"),
        ("float64_tensor", 3, "Float64Tensor"),
        ("int32_tensor", 7, "Int32Tensor"),
        ("bytes", 9, "Bytes"),
    ):
        field = _add_field(value, name, number, _F.TYPE_MESSAGE, type_name=type_name)
        field.oneof_index = 0

    record = fdp.message_type.add(name="Record")
    _add_map_field(record, "features", 1)
    _add_map_field(record, "label", 2)
    _add_field(record, "uid", 3, _F.TYPE_STRING)
    _add_field(record, "metadata", 4, _F.TYPE_STRING)
    _add_field(record, "configuration", 5, _F.TYPE_STRING)

    return fdp


_pool = descriptor_pool.DescriptorPool()
_pool.Add(_build_file_descriptor())


def _message_class(name):
    return message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{_PACKAGE}.{name}"))


Float32Tensor = _message_class("Float32Tensor")
Float64Tensor = _message_class("Float64Tensor")
Int32Tensor = _message_class("Int32Tensor")
Bytes = _message_class("Bytes")
Value = _message_class("Value")
Record = _message_class("Record")


# =============================================================================
# numpy -> Record
# =============================================================================


def _resolve_type(dtype) -> str:
    """numpy dtype 对应的 tensor 类型"""
    if np.issubdtype(dtype, np.integer):
        return "Int32"
    if dtype == np.dtype("float64"):
        return "Float64"
    if dtype == np.dtype("float32"):
        return "Float32"
    raise ValueError(f"Unsupported dtype {dtype} on array")


_TENSOR_FIELDS = {
    "Int32": "int32_tensor",
    "Float64": "float64_tensor",
    "Float32": "float32_tensor",
}


def _write_tensor(resolved_type: str, value, vector):
    getattr(value, _TENSOR_FIELDS[resolved_type]).values.extend(vector)


def write_numpy_to_dense_tensor(file, array: np.ndarray, labels: np.ndarray = None):
    """
    把 2 维 numpy 数组逐行写成 RecordIO 封装的 Record

    每行写入 features["values"]，标签写入 label["values"]

    Args:
        file: 可写的二进制文件对象
        array: 2 维特征矩阵
        labels: 1 维标签向量（长度需与矩阵某一维一致）

    Raises:
        ValueError: 形状或 dtype 不受支持
    """
    if not len(array.shape) == 2:
        raise ValueError("Array must be a Matrix")
    if labels is not None:
        if not len(labels.shape) == 1:
            raise ValueError("Labels must be a Vector")
        if labels.shape[0] not in array.shape:
            raise ValueError(
                f"Label shape {labels.shape} not compatible with array shape {array.shape}"
            )
        resolved_label_type = _resolve_type(labels.dtype)
    resolved_type = _resolve_type(array.dtype)

    record = Record()
    for index, vector in enumerate(array):
        record.Clear()
        _write_tensor(resolved_type, record.features["values"], vector)
        if labels is not None:
            _write_tensor(resolved_label_type, record.label["values"], [labels[index]])
        _write_recordio(file, record.SerializeToString())


def read_records(file) -> list:
    """读取文件中的全部 Record"""
    records = []
    for record_data in read_recordio(file):
        record = Record()
        record.ParseFromString(record_data)
        records.append(record)
    return records


# =============================================================================
# RecordIO
# =============================================================================

_kmagic = 0xCED7230A


def _write_recordio(f, data: bytes):
    length = len(data)
    f.write(struct.pack("<I", _kmagic))
    f.write(struct.pack("<I", length))
    pad = (((length + 3) >> 2) << 2) - length
    f.write(data)
    f.write(b"\x00" * pad)


def read_recordio(f):
    """逐条读取 RecordIO 数据（生成器）"""
    while True:
        header = f.read(4)
        if len(header) < 4:
            return
        (read_kmagic,) = struct.unpack("<I", header)
        if read_kmagic != _kmagic:
            raise ValueError(f"Invalid RecordIO magic number: {read_kmagic:#x}")
        length_bytes = f.read(4)
        if len(length_bytes) < 4:
            raise ValueError("Truncated RecordIO record: incomplete length header")
        (len_record,) = struct.unpack("<I", length_bytes)
        pad = (((len_record + 3) >> 2) << 2) - len_record
        payload = f.read(len_record)
        if len(payload) < len_record:
            raise ValueError(
                f"Truncated RecordIO record: expected {len_record} bytes, got {len(payload)}"
            )
        yield payload
        if pad:
            f.read(pad)
