# =============================================================================
# model.py - 模型创建和部署
# =============================================================================
# Model 封装 CreateModel，并负责部署到 Endpoint（实时 / Serverless）
# 或创建 Batch Transform 的 Transformer
# =============================================================================

import logging
from typing import Dict, List, Optional

from . import fw_utils, image_uris, s3
from .session import Session, container_def, production_variant
from .transformer import Transformer
from .utils import base_from_name, base_name_from_image, name_from_base

logger = logging.getLogger(__name__)

# 框架容器识别的环境变量 / 超参数名
SCRIPT_PARAM_NAME = "sagemaker_program"
DIR_PARAM_NAME = "sagemaker_submit_directory"
CONTAINER_LOG_LEVEL_PARAM_NAME = "sagemaker_container_log_level"
JOB_NAME_PARAM_NAME = "sagemaker_job_name"
MODEL_SERVER_WORKERS_PARAM_NAME = "sagemaker_model_server_workers"
SAGEMAKER_REGION_PARAM_NAME = "sagemaker_region"


class ServerlessInferenceConfig:
    """
    Serverless Endpoint 配置

    Example:
        model.deploy(serverless_inference_config=ServerlessInferenceConfig(memory_size_in_mb=4096))
    """

    def __init__(self, memory_size_in_mb: int = 2048, max_concurrency: int = 5):
        self.memory_size_in_mb = memory_size_in_mb
        self.max_concurrency = max_concurrency

    def _to_request_dict(self) -> dict:
        return {
            "MemorySizeInMB": self.memory_size_in_mb,
            "MaxConcurrency": self.max_concurrency,
        }


class DataCaptureConfig:
    """Endpoint 请求 / 响应采集配置（用于模型监控）"""

    API_CAPTURE_MODES = {"REQUEST": "Input", "RESPONSE": "Output"}

    def __init__(
        self,
        enable_capture: bool,
        sampling_percentage: int = 20,
        destination_s3_uri: Optional[str] = None,
        kms_key_id: Optional[str] = None,
        capture_options: Optional[List[str]] = None,
        csv_content_types: Optional[List[str]] = None,
        json_content_types: Optional[List[str]] = None,
        sagemaker_session: Session = None,
    ):
        """
        Args:
            enable_capture: 是否开启采集
            sampling_percentage: 采样百分比
            destination_s3_uri: 采集数据的 S3 位置（默认 s3://{默认 Bucket}/model-monitor/data-capture）
            kms_key_id: 加密采集数据的 KMS Key
            capture_options: REQUEST / RESPONSE（默认两者都采集）
            csv_content_types: 按 CSV 处理的 Content-Type
            json_content_types: 按 JSON 处理的 Content-Type
            sagemaker_session: 用于获取默认 Bucket
        """
        self.enable_capture = enable_capture
        self.sampling_percentage = sampling_percentage
        self.destination_s3_uri = destination_s3_uri
        if self.destination_s3_uri is None:
            sagemaker_session = sagemaker_session or Session()
            self.destination_s3_uri = s3.s3_path_join(
                "s3://",
                sagemaker_session.default_bucket(),
                sagemaker_session.default_bucket_prefix,
                "model-monitor",
                "data-capture",
            )

        self.kms_key_id = kms_key_id
        self.capture_options = capture_options or ["REQUEST", "RESPONSE"]
        self.csv_content_types = csv_content_types or ["text/csv"]
        self.json_content_types = json_content_types or ["application/json"]

    def _to_request_dict(self) -> dict:
        request_dict = {
            "EnableCapture": self.enable_capture,
            "InitialSamplingPercentage": self.sampling_percentage,
            "DestinationS3Uri": self.destination_s3_uri,
            "CaptureOptions": [
                {"CaptureMode": self.API_CAPTURE_MODES.get(option.upper(), option)}
                for option in self.capture_options
            ],
        }

        if self.kms_key_id is not None:
            request_dict["KmsKeyId"] = self.kms_key_id

        request_dict["CaptureContentTypeHeader"] = {
            "CsvContentTypes": self.csv_content_types,
            "JsonContentTypes": self.json_content_types,
        }
        return request_dict


class Model:
    """
    SageMaker Model（镜像 + 模型文件）

    Example:
        model = Model(
            image_uri="246618743249.dkr.ecr.us-west-2.amazonaws.com/sagemaker-xgboost:1.7-1",
            model_data="s3://bucket/model.tar.gz",
            role="arn:aws:iam::111122223333:role/SageMakerRole",
            predictor_cls=Predictor,
        )
        predictor = model.deploy(initial_instance_count=1, instance_type="ml.m5.large")
    """

    def __init__(
        self,
        image_uri: Optional[str],
        model_data: Optional[str] = None,
        role: Optional[str] = None,
        predictor_cls=None,
        env: Optional[Dict[str, str]] = None,
        name: Optional[str] = None,
        vpc_config: Optional[dict] = None,
        sagemaker_session: Session = None,
        enable_network_isolation: bool = False,
        model_kms_key: Optional[str] = None,
    ):
        """
        Args:
            image_uri: 推理镜像 URI
            model_data: 模型文件 S3 路径 (model.tar.gz)
            role: 执行角色（名称或 ARN）
            predictor_cls: deploy() 返回的 Predictor 类
            env: 容器环境变量
            name: 模型名称（默认由镜像名生成）
            vpc_config: VpcConfig（Subnets / SecurityGroupIds）
            sagemaker_session: Session（默认新建）
            enable_network_isolation: 是否启用网络隔离
            model_kms_key: 加密模型文件的 KMS Key
        """
        self.image_uri = image_uri
        self.model_data = model_data
        self.role = role
        self.predictor_cls = predictor_cls
        self.env = env or {}
        self.name = name
        self._base_name = None
        self.vpc_config = vpc_config
        self.sagemaker_session = sagemaker_session
        self.endpoint_name = None
        self._enable_network_isolation = enable_network_isolation
        self.model_kms_key = model_kms_key

    def _init_sagemaker_session_if_does_not_exist(self):
        if self.sagemaker_session is None:
            self.sagemaker_session = Session()

    def enable_network_isolation(self) -> bool:
        return self._enable_network_isolation

    def prepare_container_def(self, instance_type: Optional[str] = None, accelerator_type: Optional[str] = None) -> dict:
        """CreateModel 使用的容器定义"""
        return container_def(self.image_uri, self.model_data, self.env)

    def _ensure_base_name_if_needed(self, image_uri: str):
        if self.name is None and self._base_name is None:
            self._base_name = base_name_from_image(image_uri)

    def _set_model_name_if_needed(self):
        if self._base_name and self.name is None:
            self.name = name_from_base(self._base_name)

    def _create_sagemaker_model(
        self,
        instance_type: Optional[str] = None,
        accelerator_type: Optional[str] = None,
        tags: Optional[List[dict]] = None,
    ):
        self._init_sagemaker_session_if_does_not_exist()
        c_def = self.prepare_container_def(instance_type, accelerator_type=accelerator_type)

        self._ensure_base_name_if_needed(c_def["Image"])
        self._set_model_name_if_needed()

        self.sagemaker_session.create_model(
            self.name,
            self.role,
            c_def,
            vpc_config=self.vpc_config,
            enable_network_isolation=self.enable_network_isolation(),
            tags=tags,
        )

    def create(
        self,
        instance_type: Optional[str] = None,
        accelerator_type: Optional[str] = None,
        tags: Optional[List[dict]] = None,
    ):
        """只创建 SageMaker Model，不部署"""
        self._create_sagemaker_model(instance_type, accelerator_type, tags)

    def deploy(
        self,
        initial_instance_count: Optional[int] = None,
        instance_type: Optional[str] = None,
        serializer=None,
        deserializer=None,
        accelerator_type: Optional[str] = None,
        endpoint_name: Optional[str] = None,
        tags: Optional[List[dict]] = None,
        kms_key: Optional[str] = None,
        wait: bool = True,
        data_capture_config: Optional[DataCaptureConfig] = None,
        serverless_inference_config: Optional[ServerlessInferenceConfig] = None,
    ):
        """
        部署模型到 Endpoint

        Args:
            initial_instance_count: 实例数量（实时模式）
            instance_type: 实例类型（实时模式）
            serializer: 覆盖 Predictor 的序列化器
            deserializer: 覆盖 Predictor 的反序列化器
            accelerator_type: Elastic Inference 加速器
            endpoint_name: Endpoint 名称（默认由模型名生成）
            tags: Tags
            kms_key: 加密 Endpoint 存储卷的 KMS Key
            wait: 是否等待 InService
            data_capture_config: 请求 / 响应采集配置
            serverless_inference_config: Serverless 配置（指定时忽略实例参数）

        Returns:
            predictor_cls 实例，未设置 predictor_cls 时返回 None

        Raises:
            ValueError: 实时模式缺少实例类型或数量，或者未设置 role
        """
        self._init_sagemaker_session_if_does_not_exist()

        is_serverless = serverless_inference_config is not None
        if not is_serverless and not (instance_type and initial_instance_count):
            raise ValueError(
                "Must specify instance type and instance count unless using serverless inference"
            )
        if is_serverless and accelerator_type is not None:
            raise ValueError("Elastic inference is not supported with serverless inference")

        if self.role is None:
            raise ValueError("Role can not be null for deploying a model")

        self._create_sagemaker_model(instance_type, accelerator_type, tags)

        serverless_inference_config_dict = (
            serverless_inference_config._to_request_dict() if is_serverless else None
        )
        variant = production_variant(
            self.name,
            instance_type,
            initial_instance_count,
            accelerator_type=accelerator_type,
            serverless_inference_config=serverless_inference_config_dict,
        )

        if endpoint_name:
            self.endpoint_name = endpoint_name
        else:
            base_endpoint_name = self._base_name or base_from_name(self.name)
            self.endpoint_name = name_from_base(base_endpoint_name)

        data_capture_config_dict = None
        if data_capture_config is not None:
            data_capture_config_dict = data_capture_config._to_request_dict()

        self.sagemaker_session.endpoint_from_production_variants(
            name=self.endpoint_name,
            production_variants=[variant],
            tags=tags,
            kms_key=kms_key,
            wait=wait,
            data_capture_config_dict=data_capture_config_dict,
        )

        if self.predictor_cls:
            predictor = self.predictor_cls(self.endpoint_name, self.sagemaker_session)
            if serializer:
                predictor.serializer = serializer
            if deserializer:
                predictor.deserializer = deserializer
            return predictor
        return None

    def transformer(
        self,
        instance_count: int,
        instance_type: str,
        strategy: Optional[str] = None,
        assemble_with: Optional[str] = None,
        output_path: Optional[str] = None,
        output_kms_key: Optional[str] = None,
        accept: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        max_concurrent_transforms: Optional[int] = None,
        max_payload: Optional[int] = None,
        tags: Optional[List[dict]] = None,
        volume_kms_key: Optional[str] = None,
    ) -> Transformer:
        """创建模型并返回对应的 Transformer（Batch Transform）"""
        self._create_sagemaker_model(instance_type, tags=tags)
        if self.enable_network_isolation():
            env = None

        return Transformer(
            self.name,
            instance_count,
            instance_type,
            strategy=strategy,
            assemble_with=assemble_with,
            output_path=output_path,
            output_kms_key=output_kms_key,
            accept=accept,
            max_concurrent_transforms=max_concurrent_transforms,
            max_payload=max_payload,
            env=env,
            tags=tags,
            base_transform_job_name=self._base_name or self.name,
            volume_kms_key=volume_kms_key,
            sagemaker_session=self.sagemaker_session,
        )

    def delete_model(self):
        """
        Raises:
            ValueError: 模型尚未创建
        """
        if self.name is None:
            raise ValueError("The SageMaker model must be created first before attempting to delete.")
        self._init_sagemaker_session_if_does_not_exist()
        self.sagemaker_session.delete_model(self.name)


class FrameworkModel(Model):
    """
    使用框架推理容器 + 用户推理脚本的模型

    部署时把 entry_point / source_dir 打包上传到 S3，并通过环境变量告知容器
    """

    _framework_name: Optional[str] = None

    def __init__(
        self,
        model_data: Optional[str],
        image_uri: Optional[str],
        role: Optional[str],
        entry_point: str,
        source_dir: Optional[str] = None,
        predictor_cls=None,
        env: Optional[Dict[str, str]] = None,
        name: Optional[str] = None,
        container_log_level: int = logging.INFO,
        code_location: Optional[str] = None,
        sagemaker_session: Session = None,
        dependencies: Optional[List[str]] = None,
        model_server_workers: Optional[int] = None,
        **kwargs,
    ):
        """
        Args:
            model_data: 模型文件 S3 路径
            image_uri: 推理镜像（为 None 时按框架版本解析）
            role: 执行角色
            entry_point: 推理脚本
            source_dir: 源码目录（本地或 s3://.../sourcedir.tar.gz）
            container_log_level: 容器日志级别
            code_location: 源码上传位置（默认模型所在 Bucket 的默认前缀）
            dependencies: 额外打包的本地目录
            model_server_workers: 每个实例的模型服务 worker 数（默认由容器决定）
        """
        super().__init__(
            image_uri,
            model_data,
            role,
            predictor_cls=predictor_cls,
            env=env,
            name=name,
            sagemaker_session=sagemaker_session,
            **kwargs,
        )
        self.entry_point = entry_point
        self.source_dir = source_dir
        self.dependencies = dependencies or []
        self.container_log_level = container_log_level
        if code_location:
            self.bucket, self.key_prefix = s3.parse_s3_url(code_location)
        else:
            self.bucket, self.key_prefix = None, None
        self.model_server_workers = model_server_workers
        self.uploaded_code = None
        self.framework_version: Optional[str] = None
        self.py_version: Optional[str] = None

    def serving_image_uri(
        self, region_name: str, instance_type: Optional[str], accelerator_type: Optional[str] = None
    ) -> str:
        """按框架版本解析推理镜像"""
        return image_uris.retrieve(
            self._framework_name,
            region_name,
            version=self.framework_version,
            py_version=self.py_version,
            instance_type=instance_type,
            accelerator_type=accelerator_type,
            image_scope="inference",
        )

    def prepare_container_def(self, instance_type: Optional[str] = None, accelerator_type: Optional[str] = None) -> dict:
        self._init_sagemaker_session_if_does_not_exist()

        deploy_image = self.image_uri
        if not deploy_image:
            if instance_type is None:
                raise ValueError("Must supply either an instance type or image URI.")
            deploy_image = self.serving_image_uri(
                self.sagemaker_session.boto_region_name,
                instance_type,
                accelerator_type=accelerator_type,
            )

        deploy_key_prefix = fw_utils.model_code_key_prefix(self.key_prefix, self.name, deploy_image)
        self._upload_code(deploy_key_prefix)

        deploy_env = dict(self.env)
        deploy_env.update(self._framework_env_vars())
        return container_def(deploy_image, self.model_data, deploy_env)

    def _upload_code(self, key_prefix: str):
        if self.entry_point is None or (
            self.source_dir and self.source_dir.lower().startswith("s3://")
        ):
            self.uploaded_code = fw_utils.UploadedCode(
                s3_prefix=self.source_dir, script_name=self.entry_point
            )
            return

        self.uploaded_code = fw_utils.tar_and_upload_dir(
            session=self.sagemaker_session,
            bucket=self.bucket or self.sagemaker_session.default_bucket(),
            s3_key_prefix=key_prefix,
            script=self.entry_point,
            directory=self.source_dir,
            dependencies=self.dependencies,
            kms_key=self.model_kms_key,
        )

    def _framework_env_vars(self) -> Dict[str, str]:
        if self.uploaded_code:
            script_name = self.uploaded_code.script_name
            dir_name = self.uploaded_code.s3_prefix
        else:
            script_name = self.entry_point
            dir_name = self.source_dir

        env = {
            SCRIPT_PARAM_NAME.upper(): script_name,
            CONTAINER_LOG_LEVEL_PARAM_NAME.upper(): str(self.container_log_level),
            SAGEMAKER_REGION_PARAM_NAME.upper(): self.sagemaker_session.boto_region_name,
        }
        if dir_name:
            env[DIR_PARAM_NAME.upper()] = dir_name
        if self.model_server_workers:
            env[MODEL_SERVER_WORKERS_PARAM_NAME.upper()] = str(self.model_server_workers)
        return env
