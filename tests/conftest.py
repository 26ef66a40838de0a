from unittest.mock import MagicMock

import pytest

REGION = "us-west-2"
BUCKET_NAME = "bucket"
ROLE = "arn:aws:iam::111122223333:role/SageMakerRole"
MODEL_DATA = "s3://bucket/model.tar.gz"


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Mocked AWS Credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    for key in (
        "SAGEMAKER_ROLE",
        "SAGEMAKER_BUCKET",
        "SAGEMAKER_BUCKET_PREFIX",
        "SAGEMAKER_SUBNET_IDS",
        "SAGEMAKER_SECURITY_GROUP_IDS",
        "SAGEMAKER_TAGS",
        "DOMAIN_ID",
        "USER_PROFILE_NAME",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def sagemaker_session():
    session = MagicMock(name="sagemaker_session")
    session.boto_region_name = REGION
    session.default_bucket.return_value = BUCKET_NAME
    session.default_bucket_prefix = ""
    session.default_vpc_config.return_value = None
    session.expand_role.side_effect = lambda role: role
    session.describe_training_job.return_value = {
        "ModelArtifacts": {"S3ModelArtifacts": MODEL_DATA}
    }
    return session
