import io
import json

import numpy as np
import pytest

from sm_sdk.record import read_records
from sm_sdk.serializers import (
    CSVSerializer,
    DataSerializer,
    IdentitySerializer,
    JSONLinesSerializer,
    JSONSerializer,
    LibSVMSerializer,
    NumpySerializer,
    RecordSerializer,
)


def test_content_type_must_be_string():
    with pytest.raises(ValueError, match="content_type must be a string"):
        JSONSerializer(content_type=123)


def test_csv_serializer_flat_list():
    serializer = CSVSerializer()
    assert serializer.CONTENT_TYPE == "text/csv"
    assert serializer.serialize([1, 2, 3]) == "1,2,3"


def test_csv_serializer_nested_list():
    assert CSVSerializer().serialize([[1, 2], [3, 4]]) == "1,2\n3,4"


def test_csv_serializer_numpy_matrix():
    assert CSVSerializer().serialize(np.array([[1, 2], [3, 4]])) == "1,2\n3,4"


def test_csv_serializer_string_passthrough():
    assert CSVSerializer().serialize("1,2,3") == "1,2,3"


def test_csv_serializer_file_object():
    assert CSVSerializer().serialize(io.StringIO("1,2\n3,4")) == "1,2\n3,4"


def test_csv_serializer_empty_array():
    with pytest.raises(ValueError, match="Cannot serialize empty array"):
        CSVSerializer().serialize([])


def test_json_serializer():
    serializer = JSONSerializer()
    assert serializer.CONTENT_TYPE == "application/json"
    assert serializer.serialize([1, 2]) == "[1, 2]"
    assert serializer.serialize(np.array([1, 2])) == "[1, 2]"
    assert json.loads(serializer.serialize({"instances": np.array([[1], [2]])})) == {
        "instances": [[1], [2]]
    }


def test_numpy_serializer_round_trips_through_npy():
    payload = NumpySerializer().serialize(np.array([[1.0, 2.0], [3.0, 4.0]]))
    loaded = np.load(io.BytesIO(payload))
    assert loaded.tolist() == [[1.0, 2.0], [3.0, 4.0]]


def test_numpy_serializer_list_with_dtype():
    payload = NumpySerializer(dtype="float32").serialize([1, 2])
    assert np.load(io.BytesIO(payload)).dtype == np.float32


def test_numpy_serializer_empty():
    with pytest.raises(ValueError, match="Cannot serialize empty array"):
        NumpySerializer().serialize(np.array([]))


def test_identity_serializer():
    serializer = IdentitySerializer(content_type="image/jpeg")
    assert serializer.CONTENT_TYPE == "image/jpeg"
    assert serializer.serialize(b"\xff\xd8") == b"\xff\xd8"


def test_json_lines_serializer():
    serializer = JSONLinesSerializer()
    assert serializer.serialize([{"a": 1}, {"b": 2}]) == '{"a": 1}\n{"b": 2}'
    assert serializer.serialize('{"a": 1}') == '{"a": 1}'


def test_json_lines_serializer_invalid():
    with pytest.raises(ValueError, match="is not JSON Lines serializable"):
        JSONLinesSerializer().serialize(42)


def test_libsvm_serializer():
    serializer = LibSVMSerializer()
    assert serializer.CONTENT_TYPE == "text/libsvm"
    assert serializer.serialize("0 1:0.5 2:1.0") == "0 1:0.5 2:1.0"
    with pytest.raises(ValueError, match="Unable to handle input format"):
        serializer.serialize([1, 2])


def test_data_serializer_reads_file(tmp_path):
    image = tmp_path / "cat.jpg"
    image.write_bytes(b"image-bytes")
    assert DataSerializer().serialize(str(image)) == b"image-bytes"
    assert DataSerializer().serialize(b"raw") == b"raw"


def test_data_serializer_missing_file(tmp_path):
    with pytest.raises(ValueError, match="Could not open/read file"):
        DataSerializer().serialize(str(tmp_path / "missing.jpg"))


def test_record_serializer_vector_becomes_single_record():
    buffer = RecordSerializer().serialize(np.array([1.0, 2.0, 3.0]))
    records = read_records(buffer)
    assert len(records) == 1
    assert list(records[0].features["values"].float64_tensor.values) == [1.0, 2.0, 3.0]


def test_record_serializer_rejects_3d():
    with pytest.raises(ValueError, match="Expected a 1D or 2D array"):
        RecordSerializer().serialize(np.zeros((2, 2, 2)))
