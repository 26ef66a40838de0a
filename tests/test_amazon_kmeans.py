import json
from unittest.mock import MagicMock, patch

import boto3
import numpy as np
import pytest
from moto import mock_aws

from sm_sdk.amazon_estimator import (
    FileSystemRecordSet,
    RecordSet,
    _build_shards,
    upload_numpy_to_s3_shards,
)
from sm_sdk.kmeans import KMeans, KMeansModel, KMeansPredictor
from sm_sdk.record import read_records

REGION = "us-west-2"
ROLE = "arn:aws:iam::111122223333:role/SageMakerRole"
KMEANS_IMAGE = "174872318107.dkr.ecr.us-west-2.amazonaws.com/kmeans:1"


def _kmeans(sagemaker_session, **kwargs):
    return KMeans(
        role=ROLE,
        instance_count=2,
        instance_type="ml.c5.xlarge",
        k=10,
        sagemaker_session=sagemaker_session,
        **kwargs,
    )


def test_build_shards_remainder_in_last_shard():
    shards = _build_shards(3, np.arange(10))
    assert [len(s) for s in shards] == [3, 3, 4]


def test_build_shards_errors():
    with pytest.raises(ValueError, match="num_shards must be >= 1"):
        _build_shards(0, np.arange(3))
    with pytest.raises(ValueError, match="Array length is less than num shards"):
        _build_shards(4, np.arange(3))


@mock_aws
def test_upload_numpy_to_s3_shards():
    s3_client = boto3.client("s3", region_name="us-east-1")
    s3_client.create_bucket(Bucket="records")

    array = np.arange(20, dtype="float32").reshape(10, 2)
    labels = np.arange(10, dtype="float32")
    manifest = upload_numpy_to_s3_shards(2, s3_client, "records", "kmeans/data", array, labels)

    assert manifest == "s3://records/kmeans/data/.amazon.manifest"
    body = s3_client.get_object(Bucket="records", Key="kmeans/data/.amazon.manifest")["Body"].read()
    assert json.loads(body) == [
        {"prefix": "s3://records/kmeans/data/"},
        "matrix_0.pbr",
        "matrix_1.pbr",
    ]

    shard = s3_client.get_object(Bucket="records", Key="kmeans/data/matrix_1.pbr")["Body"]
    records = read_records(shard)
    assert len(records) == 5
    assert list(records[0].features["values"].float32_tensor.values) == [10.0, 11.0]
    assert list(records[0].label["values"].float32_tensor.values) == [5.0]


def test_upload_numpy_to_s3_shards_cleans_up_on_failure():
    s3_client = MagicMock()
    s3_client.put_object.side_effect = [None, Exception("upload failed")]

    with pytest.raises(Exception, match="upload failed"):
        upload_numpy_to_s3_shards(2, s3_client, "records", "prefix/", np.ones((4, 2)))

    s3_client.delete_object.assert_called_once_with(Bucket="records", Key="prefix/matrix_0.pbr")


def test_upload_numpy_to_s3_shards_encrypt():
    s3_client = MagicMock()
    upload_numpy_to_s3_shards(1, s3_client, "records", "prefix", np.ones((2, 2)), encrypt=True)

    for call in s3_client.put_object.call_args_list:
        assert call.kwargs["ServerSideEncryption"] == "AES256"


def test_record_set_channel():
    record_set = RecordSet("s3://bucket/manifest", num_records=10, feature_dim=2, channel="test")
    channel = record_set.data_channel()["test"]
    assert channel.config["DataSource"]["S3DataSource"] == {
        "S3DataType": "ManifestFile",
        "S3Uri": "s3://bucket/manifest",
        "S3DataDistributionType": "ShardedByS3Key",
    }


def test_file_system_record_set_channel():
    record_set = FileSystemRecordSet("fs-0123", "EFS", "/data", num_records=10, feature_dim=2)
    channel = record_set.data_channel()["train"]
    assert channel.config["DataSource"]["FileSystemDataSource"]["FileSystemId"] == "fs-0123"


def test_kmeans_hyperparameters(sagemaker_session):
    kmeans = _kmeans(
        sagemaker_session,
        init_method="kmeans++",
        max_iterations=3,
        local_init_method="random",
        center_factor=2,
        eval_metrics=["msd"],
    )
    kmeans.feature_dim = 4
    kmeans.mini_batch_size = 100

    assert kmeans.hyperparameters() == {
        "force_dense": "True",
        "k": "10",
        "init_method": "kmeans++",
        "local_lloyd_max_iter": "3",
        "local_lloyd_init_method": "random",
        "extra_center_factor": "2",
        "eval_metrics": '["msd"]',
        "feature_dim": "4",
        "mini_batch_size": "100",
    }


def test_kmeans_invalid_hyperparameter(sagemaker_session):
    with pytest.raises(ValueError, match="Invalid hyperparameter value 1 for k"):
        _kmeans(sagemaker_session, k=1)
    with pytest.raises(ValueError, match="eval_metrics"):
        _kmeans(sagemaker_session, eval_metrics=["rmse"])


def test_kmeans_training_image(sagemaker_session):
    assert _kmeans(sagemaker_session).training_image_uri() == KMEANS_IMAGE


def test_data_location_default(sagemaker_session):
    assert _kmeans(sagemaker_session).data_location == "s3://bucket/sagemaker-record-sets/"


def test_data_location_must_be_s3(sagemaker_session):
    kmeans = _kmeans(sagemaker_session)
    kmeans.data_location = "s3://bucket/records"
    assert kmeans.data_location == "s3://bucket/records/"
    with pytest.raises(ValueError, match='Expecting an S3 URL beginning with "s3://"'):
        kmeans.data_location = "/local/records"


def test_record_set_uploads_shards(sagemaker_session):
    kmeans = _kmeans(sagemaker_session)
    train = np.ones((10, 3), dtype="float32")

    with patch("sm_sdk.amazon_estimator.upload_numpy_to_s3_shards") as upload:
        upload.return_value = "s3://bucket/sagemaker-record-sets/KMeans-x/.amazon.manifest"
        record_set = kmeans.record_set(train, channel="test")

    num_shards, s3_client, bucket, key_prefix, array, labels, encrypt = upload.call_args.args
    assert num_shards == 2
    assert s3_client is sagemaker_session.s3_client
    assert bucket == "bucket"
    assert key_prefix.startswith("sagemaker-record-sets/KMeans-")
    assert key_prefix.endswith("/")
    assert labels is None
    assert encrypt is False

    assert record_set.s3_data == upload.return_value
    assert record_set.num_records == 10
    assert record_set.feature_dim == 3
    assert record_set.channel == "test"


def test_fit_sets_feature_dim_and_mini_batch_size(sagemaker_session):
    kmeans = _kmeans(sagemaker_session)
    train = RecordSet("s3://bucket/train/.amazon.manifest", num_records=100, feature_dim=7)
    test = RecordSet("s3://bucket/test/.amazon.manifest", num_records=10, feature_dim=7, channel="test")

    kmeans.fit([train, test], mini_batch_size=500, wait=False, job_name="kmeans-job")

    assert kmeans.latest_training_job == "kmeans-job"
    train_args = sagemaker_session.train.call_args.kwargs
    assert train_args["job_name"] == "kmeans-job"
    assert train_args["image_uri"] == KMEANS_IMAGE
    assert train_args["hyperparameters"]["feature_dim"] == "7"
    assert train_args["hyperparameters"]["mini_batch_size"] == "500"
    assert [c["ChannelName"] for c in train_args["input_config"]] == ["train", "test"]
    assert train_args["output_config"] == {"S3OutputPath": "s3://bucket"}
    sagemaker_session.wait_for_job.assert_not_called()


def test_fit_requires_train_channel(sagemaker_session):
    kmeans = _kmeans(sagemaker_session)
    test = RecordSet("s3://bucket/test/.amazon.manifest", num_records=10, feature_dim=7, channel="test")

    with pytest.raises(ValueError, match="Must provide train channel."):
        kmeans.fit([test], wait=False)


def test_prepare_for_training_defaults_mini_batch_size(sagemaker_session):
    kmeans = _kmeans(sagemaker_session)
    kmeans._prepare_for_training(RecordSet("s3://bucket/train/", 10, 2), job_name="kmeans-job")
    assert kmeans.mini_batch_size == 5000
    assert kmeans.feature_dim == 2


def test_fit_waits(sagemaker_session):
    kmeans = _kmeans(sagemaker_session)
    kmeans.fit(RecordSet("s3://bucket/train/", 10, 2, s3_data_type="S3Prefix"), job_name="kmeans-job")
    sagemaker_session.wait_for_job.assert_called_once_with("kmeans-job")


def test_attach_maps_wire_names(sagemaker_session):
    sagemaker_session.describe_training_job.return_value = {
        "TrainingJobName": "kmeans-2024-01-01-00-00-00-000",
        "RoleArn": ROLE,
        "AlgorithmSpecification": {"TrainingImage": KMEANS_IMAGE, "TrainingInputMode": "File"},
        "ResourceConfig": {"InstanceCount": 2, "InstanceType": "ml.c5.xlarge", "VolumeSizeInGB": 30},
        "StoppingCondition": {"MaxRuntimeInSeconds": 3600},
        "OutputDataConfig": {"S3OutputPath": "s3://bucket/output"},
        "HyperParameters": {
            "k": "10",
            "local_lloyd_init_method": "kmeans++",
            "eval_metrics": '["msd", "ssd"]',
            "feature_dim": "7",
            "force_dense": "True",
        },
        "ModelArtifacts": {"S3ModelArtifacts": "s3://bucket/output/model.tar.gz"},
    }

    kmeans = KMeans.attach("kmeans-2024-01-01-00-00-00-000", sagemaker_session=sagemaker_session)

    assert kmeans.k == 10
    assert kmeans.local_init_method == "kmeans++"
    assert kmeans.eval_metrics == ["msd", "ssd"]
    assert kmeans.base_job_name == "kmeans"
    assert kmeans.output_path == "s3://bucket/output"
    assert kmeans.model_data == "s3://bucket/output/model.tar.gz"
    sagemaker_session.wait_for_job.assert_called_once_with("kmeans-2024-01-01-00-00-00-000")


def test_kmeans_create_model(sagemaker_session):
    kmeans = _kmeans(sagemaker_session)
    kmeans.latest_training_job = "kmeans-job"

    model = kmeans.create_model()

    assert isinstance(model, KMeansModel)
    assert model.image_uri == KMEANS_IMAGE
    assert model.model_data == "s3://bucket/model.tar.gz"
    assert model.predictor_cls is KMeansPredictor


def test_kmeans_predictor_serializers(sagemaker_session):
    predictor = KMeansPredictor("kmeans-endpoint", sagemaker_session=sagemaker_session)
    assert predictor.content_type == "application/x-recordio-protobuf"
    assert predictor.accept == ("application/x-recordio-protobuf",)
