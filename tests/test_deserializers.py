import io

import numpy as np
import pytest

from sm_sdk.deserializers import (
    BytesDeserializer,
    CSVDeserializer,
    JSONDeserializer,
    JSONLinesDeserializer,
    NumpyDeserializer,
    RecordDeserializer,
    StreamDeserializer,
    StringDeserializer,
)
from sm_sdk.record import write_numpy_to_dense_tensor


def test_string_deserializer_closes_stream():
    stream = io.BytesIO(b"hello")
    assert StringDeserializer().deserialize(stream, "text/plain") == "hello"
    assert stream.closed


def test_bytes_deserializer():
    assert BytesDeserializer().deserialize(io.BytesIO(b"\x00\x01"), "application/octet-stream") == b"\x00\x01"


def test_accept_is_tuple():
    assert CSVDeserializer().ACCEPT == ("text/csv",)
    assert JSONDeserializer(accept=("application/json", "text/plain")).ACCEPT == (
        "application/json",
        "text/plain",
    )


def test_csv_deserializer():
    result = CSVDeserializer().deserialize(io.BytesIO(b"1,2\n3,4"), "text/csv")
    assert result == [["1", "2"], ["3", "4"]]


def test_stream_deserializer_leaves_stream_open():
    stream = io.BytesIO(b"data")
    returned, content_type = StreamDeserializer().deserialize(stream, "application/json")
    assert returned is stream
    assert content_type == "application/json"
    assert not stream.closed


def test_numpy_deserializer_csv():
    result = NumpyDeserializer().deserialize(io.BytesIO(b"1,2\n3,4"), "text/csv")
    assert result.tolist() == [[1.0, 2.0], [3.0, 4.0]]


def test_numpy_deserializer_json():
    result = NumpyDeserializer().deserialize(io.BytesIO(b"[[1, 2], [3, 4]]"), "application/json")
    assert result.tolist() == [[1, 2], [3, 4]]


def test_numpy_deserializer_npy():
    buffer = io.BytesIO()
    np.save(buffer, np.array([1, 2, 3]))
    result = NumpyDeserializer().deserialize(io.BytesIO(buffer.getvalue()), "application/x-npy")
    assert result.tolist() == [1, 2, 3]


def test_numpy_deserializer_unsupported_content_type():
    stream = io.BytesIO(b"data")
    with pytest.raises(ValueError, match="NumpyDeserializer cannot read content type text/plain"):
        NumpyDeserializer().deserialize(stream, "text/plain")
    assert stream.closed


def test_json_deserializer():
    assert JSONDeserializer().deserialize(io.BytesIO(b'{"a": [1, 2]}'), "application/json") == {"a": [1, 2]}


def test_json_lines_deserializer():
    result = JSONLinesDeserializer().deserialize(
        io.BytesIO(b'{"a": 1}\n{"b": 2}\n'), "application/jsonlines"
    )
    assert result == [{"a": 1}, {"b": 2}]


def test_record_deserializer():
    buffer = io.BytesIO()
    write_numpy_to_dense_tensor(buffer, np.array([[1.0, 2.0], [3.0, 4.0]], dtype="float32"))
    buffer.seek(0)

    records = RecordDeserializer().deserialize(buffer, "application/x-recordio-protobuf")
    assert len(records) == 2
    assert list(records[1].features["values"].float32_tensor.values) == [3.0, 4.0]
    assert buffer.closed
