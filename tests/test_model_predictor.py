import io
import json
import re

import pytest

from sm_sdk.deserializers import JSONDeserializer
from sm_sdk.model import DataCaptureConfig, Model, ServerlessInferenceConfig
from sm_sdk.pipeline import PipelineModel
from sm_sdk.predictor import Predictor
from sm_sdk.serializers import CSVSerializer
from sm_sdk.sklearn import SKLearnModel
from sm_sdk.xgboost import XGBoostModel

ROLE = "arn:aws:iam::111122223333:role/SageMakerRole"
MODEL_DATA = "s3://bucket/model.tar.gz"
IMAGE = "246618743249.dkr.ecr.us-west-2.amazonaws.com/sagemaker-xgboost:1.7-1"
SKLEARN_IMAGE = "246618743249.dkr.ecr.us-west-2.amazonaws.com/sagemaker-scikit-learn:1.2-1-cpu-py3"


def _model(sagemaker_session, **kwargs):
    kwargs.setdefault("predictor_cls", Predictor)
    return Model(IMAGE, MODEL_DATA, ROLE, sagemaker_session=sagemaker_session, **kwargs)


# =============================================================================
# Model
# =============================================================================


def test_deploy_requires_instance_settings(sagemaker_session):
    with pytest.raises(ValueError, match="Must specify instance type and instance count"):
        _model(sagemaker_session).deploy(instance_type="ml.m5.large")


def test_deploy_requires_role(sagemaker_session):
    model = Model(IMAGE, MODEL_DATA, sagemaker_session=sagemaker_session)
    with pytest.raises(ValueError, match="Role can not be null"):
        model.deploy(1, "ml.m5.large")


def test_serverless_rejects_accelerator(sagemaker_session):
    with pytest.raises(ValueError, match="Elastic inference is not supported with serverless"):
        _model(sagemaker_session).deploy(
            serverless_inference_config=ServerlessInferenceConfig(),
            accelerator_type="ml.eia1.medium",
        )


def test_deploy_realtime(sagemaker_session):
    model = _model(sagemaker_session, env={"LOG_LEVEL": "debug"})

    predictor = model.deploy(
        1,
        "ml.m5.large",
        serializer=CSVSerializer(),
        deserializer=JSONDeserializer(),
        wait=False,
        kms_key="kms-key",
    )

    assert re.match(r"^sagemaker-xgboost-\d{4}", model.name)
    assert re.match(r"^sagemaker-xgboost-\d{4}", model.endpoint_name)
    assert predictor.endpoint_name == model.endpoint_name
    assert predictor.content_type == "text/csv"
    assert predictor.accept == ("application/json",)

    sagemaker_session.create_model.assert_called_once_with(
        model.name,
        ROLE,
        {"Image": IMAGE, "Environment": {"LOG_LEVEL": "debug"}, "ModelDataUrl": MODEL_DATA},
        vpc_config=None,
        enable_network_isolation=False,
        tags=None,
    )
    endpoint_args = sagemaker_session.endpoint_from_production_variants.call_args.kwargs
    assert endpoint_args["kms_key"] == "kms-key"
    assert endpoint_args["data_capture_config_dict"] is None


def test_deploy_serverless(sagemaker_session):
    model = _model(sagemaker_session, name="my-model")

    model.deploy(
        serverless_inference_config=ServerlessInferenceConfig(memory_size_in_mb=4096, max_concurrency=10),
        endpoint_name="my-endpoint",
    )

    endpoint_args = sagemaker_session.endpoint_from_production_variants.call_args.kwargs
    assert endpoint_args["name"] == "my-endpoint"
    assert endpoint_args["wait"] is True
    assert endpoint_args["production_variants"] == [
        {
            "ModelName": "my-model",
            "VariantName": "AllTraffic",
            "InitialVariantWeight": 1,
            "ServerlessConfig": {"MemorySizeInMB": 4096, "MaxConcurrency": 10},
        }
    ]


def test_deploy_without_predictor_cls(sagemaker_session):
    model = Model(IMAGE, MODEL_DATA, ROLE, sagemaker_session=sagemaker_session)
    assert model.deploy(1, "ml.m5.large", wait=False) is None


def test_deploy_with_data_capture(sagemaker_session):
    data_capture_config = DataCaptureConfig(
        enable_capture=True,
        sampling_percentage=50,
        capture_options=["REQUEST"],
        sagemaker_session=sagemaker_session,
    )

    _model(sagemaker_session).deploy(1, "ml.m5.large", data_capture_config=data_capture_config)

    endpoint_args = sagemaker_session.endpoint_from_production_variants.call_args.kwargs
    assert endpoint_args["data_capture_config_dict"] == {
        "EnableCapture": True,
        "InitialSamplingPercentage": 50,
        "DestinationS3Uri": "s3://bucket/model-monitor/data-capture",
        "CaptureOptions": [{"CaptureMode": "Input"}],
        "CaptureContentTypeHeader": {
            "CsvContentTypes": ["text/csv"],
            "JsonContentTypes": ["application/json"],
        },
    }


def test_data_capture_config_with_kms_key(sagemaker_session):
    config = DataCaptureConfig(True, destination_s3_uri="s3://capture/", kms_key_id="kms-key")
    request = config._to_request_dict()
    assert request["DestinationS3Uri"] == "s3://capture/"
    assert request["KmsKeyId"] == "kms-key"
    assert request["CaptureOptions"] == [{"CaptureMode": "Input"}, {"CaptureMode": "Output"}]


def test_model_transformer_drops_env_with_network_isolation(sagemaker_session):
    model = _model(sagemaker_session, name="isolated", enable_network_isolation=True)

    transformer = model.transformer(1, "ml.m5.large", env={"A": "1"})

    assert transformer.model_name == "isolated"
    assert transformer.env is None
    assert transformer.base_transform_job_name == "isolated"
    assert sagemaker_session.create_model.call_args.kwargs["enable_network_isolation"] is True


def test_create_only_registers_model(sagemaker_session):
    model = _model(sagemaker_session, name="my-model")

    model.create(tags=[{"Key": "team", "Value": "ml"}])

    sagemaker_session.create_model.assert_called_once_with(
        "my-model",
        ROLE,
        {"Image": IMAGE, "Environment": {}, "ModelDataUrl": MODEL_DATA},
        vpc_config=None,
        enable_network_isolation=False,
        tags=[{"Key": "team", "Value": "ml"}],
    )
    sagemaker_session.endpoint_from_production_variants.assert_not_called()


def test_delete_model(sagemaker_session):
    model = _model(sagemaker_session)
    with pytest.raises(ValueError, match="must be created first"):
        model.delete_model()

    model.name = "my-model"
    model.delete_model()
    sagemaker_session.delete_model.assert_called_once_with("my-model")


# =============================================================================
# FrameworkModel
# =============================================================================


def test_framework_model_uploads_code_and_sets_env(sagemaker_session, tmp_path):
    script = tmp_path / "inference.py"
    script.write_text("def model_fn(model_dir):\n    pass\n")
    model = XGBoostModel(
        MODEL_DATA,
        ROLE,
        str(script),
        "1.7-1",
        name="xgb-model",
        model_server_workers=2,
        model_kms_key="kms-key",
        sagemaker_session=sagemaker_session,
    )

    container = model.prepare_container_def("ml.m5.large")

    assert container["Image"] == IMAGE
    assert container["ModelDataUrl"] == MODEL_DATA
    assert container["Environment"] == {
        "SAGEMAKER_PROGRAM": "inference.py",
        "SAGEMAKER_SUBMIT_DIRECTORY": "s3://bucket/xgb-model/sourcedir.tar.gz",
        "SAGEMAKER_CONTAINER_LOG_LEVEL": "20",
        "SAGEMAKER_REGION": "us-west-2",
        "SAGEMAKER_MODEL_SERVER_WORKERS": "2",
    }
    upload_args = sagemaker_session.s3_client.upload_file.call_args
    assert upload_args.args[1:] == ("bucket", "xgb-model/sourcedir.tar.gz")
    assert upload_args.kwargs["ExtraArgs"] == {
        "ServerSideEncryption": "aws:kms",
        "SSEKMSKeyId": "kms-key",
    }


def test_framework_model_code_location(sagemaker_session, tmp_path):
    (tmp_path / "inference.py").write_text("")
    model = XGBoostModel(
        MODEL_DATA,
        ROLE,
        "inference.py",
        "1.7-1",
        source_dir=str(tmp_path),
        name="xgb-model",
        code_location="s3://code-bucket/models",
        sagemaker_session=sagemaker_session,
    )

    container = model.prepare_container_def("ml.m5.large")

    assert container["Environment"]["SAGEMAKER_SUBMIT_DIRECTORY"] == (
        "s3://code-bucket/models/xgb-model/sourcedir.tar.gz"
    )


def test_framework_model_s3_source_dir(sagemaker_session):
    model = XGBoostModel(
        MODEL_DATA,
        ROLE,
        "inference.py",
        "1.7-1",
        source_dir="s3://bucket/code/sourcedir.tar.gz",
        image_uri="111122223333.dkr.ecr.us-west-2.amazonaws.com/custom:1",
        sagemaker_session=sagemaker_session,
    )

    container = model.prepare_container_def()

    sagemaker_session.s3_client.upload_file.assert_not_called()
    assert container["Image"] == "111122223333.dkr.ecr.us-west-2.amazonaws.com/custom:1"
    assert container["Environment"]["SAGEMAKER_SUBMIT_DIRECTORY"] == "s3://bucket/code/sourcedir.tar.gz"


def test_framework_model_requires_instance_type_without_image(sagemaker_session):
    model = XGBoostModel(MODEL_DATA, ROLE, "inference.py", "1.7-1", sagemaker_session=sagemaker_session)
    with pytest.raises(ValueError, match="Must supply either an instance type or image URI"):
        model.prepare_container_def()


def test_sklearn_model_requires_version_or_image():
    with pytest.raises(ValueError, match="framework_version was None, yet image_uri was also None"):
        SKLearnModel(MODEL_DATA, ROLE, "inference.py")


def test_sklearn_model_serving_image(sagemaker_session):
    model = SKLearnModel(
        MODEL_DATA,
        ROLE,
        "inference.py",
        framework_version="1.2-1",
        source_dir="s3://bucket/code/sourcedir.tar.gz",
        sagemaker_session=sagemaker_session,
    )
    assert model.prepare_container_def("ml.m5.large")["Image"] == SKLEARN_IMAGE


# =============================================================================
# Predictor
# =============================================================================


def _predictor(sagemaker_session):
    return Predictor(
        "my-endpoint",
        sagemaker_session=sagemaker_session,
        serializer=CSVSerializer(),
        deserializer=JSONDeserializer(),
    )


def test_predict(sagemaker_session):
    runtime = sagemaker_session.sagemaker_runtime_client
    runtime.invoke_endpoint.return_value = {
        "Body": io.BytesIO(json.dumps({"predictions": [0.7]}).encode("utf-8")),
        "ContentType": "application/json",
    }

    result = _predictor(sagemaker_session).predict([1, 2, 3], target_variant="blue", inference_id="req-1")

    assert result == {"predictions": [0.7]}
    runtime.invoke_endpoint.assert_called_once_with(
        EndpointName="my-endpoint",
        ContentType="text/csv",
        Accept="application/json",
        TargetVariant="blue",
        InferenceId="req-1",
        Body="1,2,3",
    )


def test_predict_initial_args_take_precedence(sagemaker_session):
    runtime = sagemaker_session.sagemaker_runtime_client
    runtime.invoke_endpoint.return_value = {"Body": io.BytesIO(b"[]"), "ContentType": "application/json"}

    _predictor(sagemaker_session).predict(
        "1,2", initial_args={"ContentType": "text/plain", "CustomAttributes": "x"}, target_model="m.tar.gz"
    )

    args = runtime.invoke_endpoint.call_args.kwargs
    assert args["ContentType"] == "text/plain"
    assert args["CustomAttributes"] == "x"
    assert args["TargetModel"] == "m.tar.gz"


def test_default_predictor_sends_raw_bytes(sagemaker_session):
    runtime = sagemaker_session.sagemaker_runtime_client
    runtime.invoke_endpoint.return_value = {"Body": io.BytesIO(b"\x01\x02")}

    predictor = Predictor("my-endpoint", sagemaker_session=sagemaker_session)

    assert predictor.predict(b"raw") == b"\x01\x02"
    assert runtime.invoke_endpoint.call_args.kwargs["ContentType"] == "application/octet-stream"
    assert predictor.endpoint == "my-endpoint"


def _describe_endpoint(sagemaker_session, model_names):
    sagemaker_session.describe_endpoint.return_value = {"EndpointConfigName": "my-config"}
    sagemaker_session.describe_endpoint_config.return_value = {
        "ProductionVariants": [{"ModelName": name} for name in model_names]
    }


def test_update_endpoint_replaces_variant(sagemaker_session):
    _describe_endpoint(sagemaker_session, ["model-a"])
    predictor = _predictor(sagemaker_session)

    predictor.update_endpoint(initial_instance_count=2, instance_type="ml.m5.xlarge", wait=False)

    existing, new_config = sagemaker_session.create_endpoint_config_from_existing.call_args.args
    kwargs = sagemaker_session.create_endpoint_config_from_existing.call_args.kwargs
    assert existing == "my-config"
    assert new_config.startswith("my-config-")
    assert kwargs["new_production_variants"] == [
        {
            "ModelName": "model-a",
            "VariantName": "AllTraffic",
            "InitialVariantWeight": 1,
            "InstanceType": "ml.m5.xlarge",
            "InitialInstanceCount": 2,
        }
    ]
    sagemaker_session.update_endpoint.assert_called_once_with("my-endpoint", new_config, wait=False)


def test_update_endpoint_keeps_variants_for_config_only_change(sagemaker_session):
    _describe_endpoint(sagemaker_session, ["model-a"])

    _predictor(sagemaker_session).update_endpoint(data_capture_config_dict={"EnableCapture": False})

    kwargs = sagemaker_session.create_endpoint_config_from_existing.call_args.kwargs
    assert kwargs["new_production_variants"] is None
    assert kwargs["new_data_capture_config_dict"] == {"EnableCapture": False}


def test_update_endpoint_requires_count_and_type(sagemaker_session):
    _describe_endpoint(sagemaker_session, ["model-a"])
    with pytest.raises(ValueError, match="Missing initial_instance_count and/or instance_type"):
        _predictor(sagemaker_session).update_endpoint(instance_type="ml.m5.xlarge")


def test_update_endpoint_multiple_models(sagemaker_session):
    _describe_endpoint(sagemaker_session, ["model-a", "model-b"])
    with pytest.raises(ValueError, match="endpoint has multiple models: model-a, model-b"):
        _predictor(sagemaker_session).update_endpoint(1, "ml.m5.xlarge")


def test_delete_endpoint_and_models(sagemaker_session):
    _describe_endpoint(sagemaker_session, ["model-a", "model-b"])
    predictor = _predictor(sagemaker_session)

    predictor.delete_endpoint()
    predictor.delete_model()

    sagemaker_session.delete_endpoint_config.assert_called_once_with("my-config")
    sagemaker_session.delete_endpoint.assert_called_once_with("my-endpoint")
    assert [c.args[0] for c in sagemaker_session.delete_model.call_args_list] == ["model-a", "model-b"]


# =============================================================================
# PipelineModel
# =============================================================================


def test_pipeline_model_deploy(sagemaker_session):
    preprocess = Model(SKLEARN_IMAGE, "s3://bucket/preprocess.tar.gz", ROLE)
    xgb = Model(IMAGE, MODEL_DATA, ROLE)
    pipeline = PipelineModel(
        [preprocess, xgb], ROLE, predictor_cls=Predictor, sagemaker_session=sagemaker_session
    )

    predictor = pipeline.deploy(1, "ml.m5.large", wait=False)

    assert preprocess.sagemaker_session is sagemaker_session
    assert re.match(r"^sagemaker-scikit-learn-\d{4}", pipeline.name)
    assert predictor.endpoint_name == pipeline.name
    name, role, containers = sagemaker_session.create_model.call_args.args
    assert role == ROLE
    assert [c["Image"] for c in containers] == [SKLEARN_IMAGE, IMAGE]
    sagemaker_session.endpoint_from_production_variants.assert_called_once()


def test_pipeline_model_update_endpoint(sagemaker_session):
    sagemaker_session.create_endpoint_config.return_value = "pipeline"
    pipeline = PipelineModel(
        [Model(IMAGE, MODEL_DATA, ROLE)], ROLE, name="pipeline", sagemaker_session=sagemaker_session
    )

    assert pipeline.deploy(1, "ml.m5.large", endpoint_name="existing", update_endpoint=True) is None

    sagemaker_session.update_endpoint.assert_called_once_with("existing", "pipeline", wait=True)
    sagemaker_session.endpoint_from_production_variants.assert_not_called()


def test_pipeline_model_transformer_and_delete(sagemaker_session):
    pipeline = PipelineModel([Model(IMAGE, MODEL_DATA, ROLE)], ROLE, sagemaker_session=sagemaker_session)
    with pytest.raises(ValueError, match="must be created before attempting to delete"):
        pipeline.delete_model()

    transformer = pipeline.transformer(1, "ml.m5.large")

    assert transformer.model_name == pipeline.name
    pipeline.delete_model()
    sagemaker_session.delete_model.assert_called_once_with(pipeline.name)
