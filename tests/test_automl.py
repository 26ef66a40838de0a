import re

import pytest

from sm_sdk.automl import (
    INFERENCE_INPUT_ENV,
    INFERENCE_OUTPUT_ENV,
    INFERENCE_SUPPORTED_ENV,
    AutoML,
    AutoMLInput,
)
from sm_sdk.pipeline import PipelineModel
from sm_sdk.predictor import Predictor

ROLE = "arn:aws:iam::111122223333:role/SageMakerRole"
TRAIN_DATA = "s3://bucket/data/train.csv"

DATA_PROCESSING_IMAGE = "246618743249.dkr.ecr.us-west-2.amazonaws.com/sagemaker-sklearn-automl:2.5-1-cpu-py3"
ALGORITHM_IMAGE = "246618743249.dkr.ecr.us-west-2.amazonaws.com/sagemaker-xgboost:1.7-1"


def _candidate():
    return {
        "CandidateName": "automl-job-001",
        "InferenceContainers": [
            {
                "Image": DATA_PROCESSING_IMAGE,
                "ModelDataUrl": "s3://bucket/automl-job/data-processor-models/model.tar.gz",
                "Environment": {"AUTOML_TRANSFORM_MODE": "feature-transform"},
            },
            {
                "Image": ALGORITHM_IMAGE,
                "ModelDataUrl": "s3://bucket/automl-job/tuning/model.tar.gz",
                "Environment": {
                    INFERENCE_SUPPORTED_ENV: "predicted_label,probability,probabilities",
                },
            },
            {
                "Image": DATA_PROCESSING_IMAGE,
                "ModelDataUrl": "s3://bucket/automl-job/data-processor-models/model.tar.gz",
                "Environment": {
                    "AUTOML_TRANSFORM_MODE": "inverse-label-transform",
                    INFERENCE_SUPPORTED_ENV: "predicted_label, probability, labels, probabilities",
                },
            },
        ],
    }


def _automl(sagemaker_session, **kwargs):
    return AutoML(
        role=ROLE,
        target_attribute_name="label",
        sagemaker_session=sagemaker_session,
        **kwargs,
    )


# =============================================================================
# 构造
# =============================================================================


@pytest.mark.parametrize(
    "kwargs",
    [
        {"problem_type": "BinaryClassification"},
        {"job_objective": {"MetricName": "F1"}},
    ],
)
def test_problem_type_and_objective_must_be_paired(sagemaker_session, kwargs):
    with pytest.raises(ValueError, match="One of problem type and objective metric provided"):
        _automl(sagemaker_session, **kwargs)


def test_problem_type_with_objective(sagemaker_session):
    automl = _automl(
        sagemaker_session,
        problem_type="BinaryClassification",
        job_objective={"MetricName": "F1"},
    )
    assert automl.problem_type == "BinaryClassification"


# =============================================================================
# 启动作业
# =============================================================================


def test_fit_request(sagemaker_session):
    automl = _automl(sagemaker_session, max_candidates=10)

    automl.fit(TRAIN_DATA, job_name="automl-job")

    sagemaker_session.auto_ml.assert_called_once_with(
        input_config=[
            {
                "DataSource": {"S3DataSource": {"S3DataType": "S3Prefix", "S3Uri": TRAIN_DATA}},
                "TargetAttributeName": "label",
            }
        ],
        output_config={"S3OutputPath": "s3://bucket/"},
        auto_ml_job_config={
            "CompletionCriteria": {"MaxCandidates": 10},
            "SecurityConfig": {"EnableInterContainerTrafficEncryption": False},
        },
        role=ROLE,
        job_name="automl-job",
        problem_type=None,
        job_objective=None,
        generate_candidate_definitions_only=False,
        tags=None,
        model_deploy_config=None,
    )
    sagemaker_session.wait_for_auto_ml_job.assert_called_once_with("automl-job")
    assert automl.latest_auto_ml_job == "automl-job"


def test_fit_generates_job_name(sagemaker_session):
    automl = _automl(sagemaker_session)

    automl.fit(TRAIN_DATA, wait=False)

    assert re.match(r"^automl-\d{4}-\d{2}-\d{2}-\d{2}-\d{2}-\d{2}-\d{3}$", automl.current_job_name)
    assert len(automl.current_job_name) <= 32
    sagemaker_session.wait_for_auto_ml_job.assert_not_called()


def test_fit_truncates_base_job_name(sagemaker_session):
    automl = _automl(sagemaker_session, base_job_name="customer-churn-prediction")

    automl.fit(TRAIN_DATA, wait=False)

    assert len(automl.current_job_name) == 32
    assert automl.current_job_name.startswith("customer-")


def test_fit_job_config_options(sagemaker_session):
    vpc_config = {"Subnets": ["subnet-1"], "SecurityGroupIds": ["sg-1"]}
    automl = _automl(
        sagemaker_session,
        output_path="s3://bucket/automl-output",
        output_kms_key="output-kms",
        compression_type="Gzip",
        content_type="text/csv;header=present",
        volume_kms_key="volume-kms",
        encrypt_inter_container_traffic=True,
        vpc_config=vpc_config,
        max_candidates=5,
        max_runtime_per_training_job_in_seconds=600,
        total_job_runtime_in_seconds=3600,
        feature_specification_s3_uri="s3://bucket/features.json",
        validation_fraction=0.2,
        mode="ENSEMBLING",
        problem_type="Regression",
        job_objective={"MetricName": "MSE"},
        generate_candidate_definitions_only=True,
        tags=[{"Key": "team", "Value": "ml"}],
    )

    automl.fit([TRAIN_DATA, "s3://bucket/data/more.csv"], job_name="automl-job", wait=False)

    kwargs = sagemaker_session.auto_ml.call_args.kwargs
    assert kwargs["input_config"] == [
        {
            "DataSource": {"S3DataSource": {"S3DataType": "S3Prefix", "S3Uri": uri}},
            "CompressionType": "Gzip",
            "ContentType": "text/csv;header=present",
            "TargetAttributeName": "label",
        }
        for uri in (TRAIN_DATA, "s3://bucket/data/more.csv")
    ]
    assert kwargs["output_config"] == {
        "S3OutputPath": "s3://bucket/automl-output",
        "KmsKeyId": "output-kms",
    }
    assert kwargs["auto_ml_job_config"] == {
        "CompletionCriteria": {
            "MaxCandidates": 5,
            "MaxRuntimePerTrainingJobInSeconds": 600,
            "MaxAutoMLJobRuntimeInSeconds": 3600,
        },
        "SecurityConfig": {
            "EnableInterContainerTrafficEncryption": True,
            "VolumeKmsKeyId": "volume-kms",
            "VpcConfig": vpc_config,
        },
        "CandidateGenerationConfig": {"FeatureSpecificationS3Uri": "s3://bucket/features.json"},
        "DataSplitConfig": {"ValidationFraction": 0.2},
        "Mode": "ENSEMBLING",
    }
    assert kwargs["problem_type"] == "Regression"
    assert kwargs["job_objective"] == {"MetricName": "MSE"}
    assert kwargs["generate_candidate_definitions_only"] is True
    assert kwargs["tags"] == [{"Key": "team", "Value": "ml"}]


@pytest.mark.parametrize(
    "auto_generate, endpoint_name, expected",
    [
        (None, None, None),
        (True, "ignored", {"AutoGenerateEndpointName": True}),
        (False, "churn-endpoint", {"AutoGenerateEndpointName": False, "EndpointName": "churn-endpoint"}),
        (None, "churn-endpoint", {"EndpointName": "churn-endpoint"}),
    ],
)
def test_fit_model_deploy_config(sagemaker_session, auto_generate, endpoint_name, expected):
    automl = _automl(
        sagemaker_session,
        auto_generate_endpoint_name=auto_generate,
        endpoint_name=endpoint_name,
    )

    automl.fit(TRAIN_DATA, job_name="automl-job", wait=False)

    assert sagemaker_session.auto_ml.call_args.kwargs["model_deploy_config"] == expected


def test_fit_automl_inputs(sagemaker_session):
    automl = _automl(sagemaker_session)
    inputs = [
        AutoMLInput(
            inputs=[TRAIN_DATA],
            target_attribute_name="label",
            channel_type="training",
            content_type="text/csv;header=present",
            compression="Gzip",
        ),
        AutoMLInput(
            inputs="s3://bucket/data/validation.csv",
            target_attribute_name="label",
            channel_type="validation",
            s3_data_type="ManifestFile",
        ),
    ]

    automl.fit(inputs, job_name="automl-job", wait=False)

    assert sagemaker_session.auto_ml.call_args.kwargs["input_config"] == [
        {
            "DataSource": {"S3DataSource": {"S3DataType": "S3Prefix", "S3Uri": TRAIN_DATA}},
            "TargetAttributeName": "label",
            "CompressionType": "Gzip",
            "ChannelType": "training",
            "ContentType": "text/csv;header=present",
        },
        {
            "DataSource": {
                "S3DataSource": {"S3DataType": "ManifestFile", "S3Uri": "s3://bucket/data/validation.csv"}
            },
            "TargetAttributeName": "label",
            "ChannelType": "validation",
        },
    ]


def test_fit_rejects_local_path(sagemaker_session):
    automl = _automl(sagemaker_session)

    with pytest.raises(ValueError, match='AutoML inputs must be S3 URIs beginning with "s3://"'):
        automl.fit("data/train.csv")

    sagemaker_session.auto_ml.assert_not_called()


def test_fit_rejects_unsupported_input_type(sagemaker_session):
    automl = _automl(sagemaker_session)

    with pytest.raises(ValueError, match="Cannot format input"):
        automl.fit({"train": TRAIN_DATA})


# =============================================================================
# 关联 / 查询
# =============================================================================


def test_attach(sagemaker_session):
    sagemaker_session.describe_auto_ml_job.return_value = {
        "AutoMLJobName": "automl-job",
        "RoleArn": ROLE,
        "InputDataConfig": [
            {
                "DataSource": {"S3DataSource": {"S3DataType": "S3Prefix", "S3Uri": TRAIN_DATA}},
                "TargetAttributeName": "churn",
                "CompressionType": "Gzip",
                "ContentType": "text/csv;header=present",
            }
        ],
        "OutputDataConfig": {"S3OutputPath": "s3://bucket/output", "KmsKeyId": "output-kms"},
        "AutoMLJobConfig": {
            "CompletionCriteria": {"MaxCandidates": 3, "MaxAutoMLJobRuntimeInSeconds": 7200},
            "SecurityConfig": {"EnableInterContainerTrafficEncryption": True},
            "Mode": "HYPERPARAMETER_TUNING",
        },
        "ProblemType": "BinaryClassification",
        "AutoMLJobObjective": {"MetricName": "F1"},
        "GenerateCandidateDefinitionsOnly": False,
        "ModelDeployConfig": {"AutoGenerateEndpointName": True},
    }

    automl = AutoML.attach("automl-job", sagemaker_session=sagemaker_session)

    assert automl.current_job_name == "automl-job"
    assert automl.latest_auto_ml_job == "automl-job"
    assert automl.role == ROLE
    assert automl.target_attribute_name == "churn"
    assert automl.compression_type == "Gzip"
    assert automl.content_type == "text/csv;header=present"
    assert automl.s3_data_type == "S3Prefix"
    assert automl.output_path == "s3://bucket/output"
    assert automl.output_kms_key == "output-kms"
    assert automl.max_candidates == 3
    assert automl.total_job_runtime_in_seconds == 7200
    assert automl.max_runtime_per_training_job_in_seconds is None
    assert automl.encrypt_inter_container_traffic is True
    assert automl.mode == "HYPERPARAMETER_TUNING"
    assert automl.problem_type == "BinaryClassification"
    assert automl.job_objective == {"MetricName": "F1"}
    assert automl.auto_generate_endpoint_name is True
    assert automl.sagemaker_session is sagemaker_session


def test_describe_auto_ml_job_defaults_to_current_job(sagemaker_session):
    automl = _automl(sagemaker_session)
    automl.current_job_name = "automl-job"

    assert automl.describe_auto_ml_job() is sagemaker_session.describe_auto_ml_job.return_value
    sagemaker_session.describe_auto_ml_job.assert_called_once_with("automl-job")


def test_best_candidate_is_cached(sagemaker_session):
    sagemaker_session.describe_auto_ml_job.return_value = {
        "AutoMLJobName": "automl-job",
        "BestCandidate": _candidate(),
    }
    automl = _automl(sagemaker_session)
    automl.current_job_name = "automl-job"

    first = automl.best_candidate()
    second = automl.best_candidate()

    assert first["CandidateName"] == "automl-job-001"
    assert second is first
    sagemaker_session.describe_auto_ml_job.assert_called_once_with("automl-job")


def test_list_candidates(sagemaker_session):
    automl = _automl(sagemaker_session)
    automl.current_job_name = "automl-job"

    automl.list_candidates(sort_by="FinalObjectiveMetricValue", sort_order="Descending", max_results=5)

    sagemaker_session.list_candidates.assert_called_once_with(
        job_name="automl-job",
        status_equals=None,
        candidate_name=None,
        candidate_arn=None,
        sort_order="Descending",
        sort_by="FinalObjectiveMetricValue",
        max_results=5,
    )


# =============================================================================
# 推理响应内容
# =============================================================================


def test_inference_response_keys_are_chained_through_containers():
    containers = _candidate()["InferenceContainers"]

    AutoML.validate_and_update_inference_response(
        containers, ["predicted_label", "probability", "labels"]
    )

    assert INFERENCE_OUTPUT_ENV not in containers[0]["Environment"]
    assert containers[1]["Environment"][INFERENCE_OUTPUT_ENV] == "predicted_label,probability"
    assert INFERENCE_INPUT_ENV not in containers[1]["Environment"]
    assert containers[2]["Environment"][INFERENCE_INPUT_ENV] == "predicted_label,probability"
    assert containers[2]["Environment"][INFERENCE_OUTPUT_ENV] == "predicted_label,probability,labels"


def test_inference_response_keys_not_requested():
    containers = _candidate()["InferenceContainers"]

    AutoML.validate_and_update_inference_response(containers, None)

    assert containers == _candidate()["InferenceContainers"]


def test_inference_response_keys_unsupported():
    with pytest.raises(ValueError, match=r"Requested inference output keys \[bogus\] are unsupported"):
        AutoML.validate_and_update_inference_response(
            _candidate()["InferenceContainers"], ["predicted_label", "bogus"]
        )


def test_inference_response_keys_without_selectable_output():
    containers = [{"Image": ALGORITHM_IMAGE, "Environment": {}}]

    with pytest.raises(ValueError, match="does not support selection of inference content"):
        AutoML.validate_and_update_inference_response(containers, ["predicted_label"])


# =============================================================================
# 模型 / 部署
# =============================================================================


def test_create_model_builds_pipeline(sagemaker_session):
    candidate = _candidate()
    automl = _automl(sagemaker_session)

    pipeline = automl.create_model(
        "automl-model",
        candidate=candidate,
        model_kms_key="model-kms",
        predictor_cls=Predictor,
        inference_response_keys=["predicted_label"],
    )

    assert isinstance(pipeline, PipelineModel)
    assert pipeline.name == "automl-model"
    assert pipeline.role == ROLE
    assert pipeline.predictor_cls is Predictor
    assert [model.image_uri for model in pipeline.models] == [
        DATA_PROCESSING_IMAGE,
        ALGORITHM_IMAGE,
        DATA_PROCESSING_IMAGE,
    ]
    assert pipeline.models[1].model_data == "s3://bucket/automl-job/tuning/model.tar.gz"
    assert pipeline.models[1].env[INFERENCE_OUTPUT_ENV] == "predicted_label"
    assert pipeline.models[2].env[INFERENCE_INPUT_ENV] == "predicted_label"
    assert all(model.model_kms_key == "model-kms" for model in pipeline.models)

    # 候选模型本身不被修改
    assert INFERENCE_OUTPUT_ENV not in candidate["InferenceContainers"][1]["Environment"]


def test_create_model_defaults_to_best_candidate(sagemaker_session):
    sagemaker_session.describe_auto_ml_job.return_value = {
        "AutoMLJobName": "automl-job",
        "BestCandidate": _candidate(),
    }
    automl = _automl(sagemaker_session)
    automl.current_job_name = "automl-job"

    pipeline = automl.create_model("automl-model")

    assert len(pipeline.models) == 3
    sagemaker_session.describe_auto_ml_job.assert_called_once_with("automl-job")


def test_deploy(sagemaker_session):
    automl = _automl(sagemaker_session)

    predictor = automl.deploy(
        initial_instance_count=1,
        instance_type="ml.m5.large",
        candidate=_candidate(),
        name="automl-model",
        endpoint_name="churn-endpoint",
        inference_response_keys=["predicted_label", "probability"],
    )

    assert predictor is None
    name, role, containers = sagemaker_session.create_model.call_args.args
    assert name == "automl-model"
    assert role == ROLE
    assert [c["Image"] for c in containers] == [DATA_PROCESSING_IMAGE, ALGORITHM_IMAGE, DATA_PROCESSING_IMAGE]
    assert containers[1]["Environment"][INFERENCE_OUTPUT_ENV] == "predicted_label,probability"
    assert containers[2]["Environment"][INFERENCE_INPUT_ENV] == "predicted_label,probability"

    endpoint_kwargs = sagemaker_session.endpoint_from_production_variants.call_args.kwargs
    assert endpoint_kwargs["name"] == "churn-endpoint"
    assert endpoint_kwargs["wait"] is True
    assert endpoint_kwargs["production_variants"][0]["ModelName"] == "automl-model"


def test_deploy_with_predictor_cls(sagemaker_session):
    automl = _automl(sagemaker_session)

    predictor = automl.deploy(
        initial_instance_count=1,
        instance_type="ml.m5.large",
        candidate=_candidate(),
        name="automl-model",
        predictor_cls=Predictor,
    )

    assert isinstance(predictor, Predictor)
    assert predictor.endpoint_name == "automl-model"
