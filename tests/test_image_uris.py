from unittest.mock import MagicMock

import pytest

from sm_sdk import image_uris

REGION = "us-west-2"


def test_retrieve_legacy_xgboost():
    uri = image_uris.retrieve("xgboost", REGION, version="1")
    assert uri == "433757028032.dkr.ecr.us-west-2.amazonaws.com/xgboost:1"


def test_retrieve_version_alias():
    assert image_uris.retrieve("xgboost", REGION, version="latest") == image_uris.retrieve(
        "xgboost", REGION, version="1"
    )


def test_retrieve_xgboost_framework_version():
    uri = image_uris.retrieve("xgboost", REGION, version="1.7-1")
    assert uri == "246618743249.dkr.ecr.us-west-2.amazonaws.com/sagemaker-xgboost:1.7-1"


def test_retrieve_xgboost_gpu_not_supported_for_old_version():
    with pytest.raises(ValueError, match="Unsupported processor: gpu"):
        image_uris.retrieve("xgboost", REGION, version="0.90-1", instance_type="ml.g4dn.xlarge")


def test_retrieve_sklearn():
    uri = image_uris.retrieve(
        "sklearn", REGION, version="1.2-1", py_version="py3", instance_type="ml.m5.xlarge"
    )
    assert uri == "246618743249.dkr.ecr.us-west-2.amazonaws.com/sagemaker-scikit-learn:1.2-1-cpu-py3"


def test_retrieve_pytorch_training_gpu():
    uri = image_uris.retrieve(
        "pytorch",
        REGION,
        version="2.0.1",
        py_version="py310",
        instance_type="ml.g5.xlarge",
        image_scope="training",
    )
    assert uri == "763104351884.dkr.ecr.us-west-2.amazonaws.com/pytorch-training:2.0.1-gpu-py310"


def test_retrieve_pytorch_requires_scope():
    with pytest.raises(ValueError, match="Unsupported image scope"):
        image_uris.retrieve(
            "pytorch", REGION, version="2.0.1", py_version="py310", instance_type="ml.c5.xlarge"
        )


def test_retrieve_tag_prefix():
    uri = image_uris.retrieve(
        "ray-pytorch", REGION, version="0.8.5", py_version="py36", instance_type="ml.p3.2xlarge"
    )
    assert uri == (
        "462105765813.dkr.ecr.us-west-2.amazonaws.com/"
        "sagemaker-rl-ray-container:ray-0.8.5-torch-gpu-py36"
    )


def test_retrieve_elastic_inference():
    uri = image_uris.retrieve(
        "tensorflow",
        REGION,
        version="1.10.0",
        py_version="py2",
        instance_type="ml.c4.xlarge",
        accelerator_type="ml.eia1.medium",
    )
    assert uri == "520713654638.dkr.ecr.us-west-2.amazonaws.com/sagemaker-tensorflow-eia:1.10.0-cpu-py2"


def test_retrieve_elastic_inference_new_repository():
    uri = image_uris.retrieve(
        "tensorflow",
        REGION,
        version="2.0",
        instance_type="ml.c4.xlarge",
        accelerator_type="ml.eia2.medium",
        image_scope="inference",
    )
    assert uri == "763104351884.dkr.ecr.us-west-2.amazonaws.com/tensorflow-inference-eia:2.0-cpu"


def test_retrieve_invalid_accelerator():
    with pytest.raises(ValueError, match="Invalid SageMaker Elastic Inference accelerator type"):
        image_uris.retrieve(
            "tensorflow", REGION, version="2.0", instance_type="ml.c4.xlarge", accelerator_type="ml.p3"
        )


def test_retrieve_algorithm_single_version():
    uri = image_uris.retrieve("kmeans", REGION)
    assert uri == "174872318107.dkr.ecr.us-west-2.amazonaws.com/kmeans:1"


@pytest.mark.parametrize(
    "framework, version, expected",
    [
        ("pca", None, "174872318107.dkr.ecr.us-west-2.amazonaws.com/pca:1"),
        ("linear-learner", "1", "174872318107.dkr.ecr.us-west-2.amazonaws.com/linear-learner:1"),
        ("factorization-machines", None, "174872318107.dkr.ecr.us-west-2.amazonaws.com/factorization-machines:1"),
        ("knn", None, "174872318107.dkr.ecr.us-west-2.amazonaws.com/knn:1"),
        ("autopilot", None, "246618743249.dkr.ecr.us-west-2.amazonaws.com/sagemaker-sklearn-automl:2.5-1-cpu-py3"),
        ("sparkml-serving", "3.3", "246618743249.dkr.ecr.us-west-2.amazonaws.com/sagemaker-sparkml-serving:3.3"),
    ],
)
def test_retrieve_inference_and_algorithm_images(framework, version, expected):
    assert image_uris.retrieve(framework, REGION, version=version) == expected


def test_retrieve_china_region_hostname():
    uri = image_uris.retrieve("kmeans", "cn-north-1", version="1")
    assert uri == "390948362332.dkr.ecr.cn-north-1.amazonaws.com.cn/kmeans:1"


def test_retrieve_unsupported_framework():
    with pytest.raises(ValueError, match="Unsupported framework: not-a-framework"):
        image_uris.retrieve("not-a-framework", REGION)


def test_retrieve_unsupported_version():
    with pytest.raises(ValueError, match="Unsupported xgboost version: 9.9-9"):
        image_uris.retrieve("xgboost", REGION, version="9.9-9")


def test_retrieve_unsupported_region():
    with pytest.raises(ValueError, match="Unsupported region: mars-west-1"):
        image_uris.retrieve("kmeans", "mars-west-1")


def test_retrieve_missing_instance_type():
    with pytest.raises(ValueError, match="Empty SageMaker instance type"):
        image_uris.retrieve(
            "pytorch", REGION, version="2.0.1", py_version="py310", image_scope="training"
        )


def test_retrieve_single_processor_needs_no_instance_type():
    uri = image_uris.retrieve("sklearn", REGION, version="1.2-1", py_version="py3")
    assert uri == "246618743249.dkr.ecr.us-west-2.amazonaws.com/sagemaker-scikit-learn:1.2-1-cpu-py3"


def test_retrieve_invalid_instance_type():
    with pytest.raises(ValueError, match="Invalid SageMaker instance type: m5.large"):
        image_uris.retrieve("sklearn", REGION, version="1.2-1", py_version="py3", instance_type="m5.large")


def test_retrieve_ecr_uri_latest_tag(monkeypatch):
    monkeypatch.setattr(image_uris, "_ecr_repositories_cache", None)

    ecr = MagicMock()
    repositories_paginator = MagicMock()
    repositories_paginator.paginate.return_value = [
        {
            "repositories": [
                {
                    "repositoryName": "my-inference",
                    "repositoryUri": "111122223333.dkr.ecr.us-west-2.amazonaws.com/my-inference",
                }
            ]
        }
    ]
    images_paginator = MagicMock()
    images_paginator.paginate.return_value = [
        {
            "imageDetails": [
                {"imageTags": ["v1"], "imagePushedAt": 1},
                {"imageTags": ["v2"], "imagePushedAt": 2},
            ]
        }
    ]
    ecr.get_paginator.side_effect = lambda name: (
        repositories_paginator if name == "describe_repositories" else images_paginator
    )
    boto_session = MagicMock()
    boto_session.client.return_value = ecr

    uri = image_uris.retrieve_ecr_uri("my-inference", boto_session=boto_session)
    assert uri == "111122223333.dkr.ecr.us-west-2.amazonaws.com/my-inference:v2"

    with pytest.raises(ValueError, match="Tag v3 not found"):
        image_uris.retrieve_ecr_uri("my-inference", tag="v3", boto_session=boto_session)


def test_retrieve_ecr_uri_missing_repository(monkeypatch):
    monkeypatch.setattr(image_uris, "_ecr_repositories_cache", None)

    ecr = MagicMock()
    ecr.get_paginator.return_value.paginate.return_value = [{"repositories": []}]
    boto_session = MagicMock()
    boto_session.client.return_value = ecr

    with pytest.raises(ValueError, match="ECR repository not found: missing"):
        image_uris.retrieve_ecr_uri("missing", boto_session=boto_session)
