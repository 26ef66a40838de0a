# =============================================================================
# transformer.py - 批量推理 (Batch Transform)
# =============================================================================
# 基于已创建的 SageMaker Model 创建和管理 Transform Job
# =============================================================================

import logging
from typing import Dict, List, Optional

from botocore.exceptions import ClientError

from .s3 import s3_path_join
from .utils import base_from_name, base_name_from_image, name_from_base

logger = logging.getLogger(__name__)

TRANSFORM_DATA_TYPES = ("S3Prefix", "ManifestFile")


class Transformer:
    """
    Batch Transform 作业

    Example:
        transformer = Transformer(
            model_name="xgboost-2024-01-01-00-00-00-000",
            instance_count=1,
            instance_type="ml.m5.large",
            strategy="MultiRecord",
            assemble_with="Line",
        )
        transformer.transform("s3://bucket/input/data.csv", content_type="text/csv", split_type="Line")
    """

    def __init__(
        self,
        model_name: str,
        instance_count: int,
        instance_type: str,
        strategy: Optional[str] = None,
        assemble_with: Optional[str] = None,
        output_path: Optional[str] = None,
        output_kms_key: Optional[str] = None,
        accept: Optional[str] = None,
        max_concurrent_transforms: Optional[int] = None,
        max_payload: Optional[int] = None,
        tags: Optional[List[dict]] = None,
        env: Optional[Dict[str, str]] = None,
        base_transform_job_name: Optional[str] = None,
        sagemaker_session=None,
        volume_kms_key: Optional[str] = None,
    ):
        """
        Args:
            model_name: 模型名称
            instance_count: 实例数量
            instance_type: 实例类型
            strategy: 处理策略 (SingleRecord, MultiRecord)
            assemble_with: 输出合并方式 (Line, None)
            output_path: 输出 S3 路径（默认 s3://{默认 Bucket}/{作业名}）
            output_kms_key: 输出加密 KMS Key
            accept: 输出的 MIME 类型
            max_concurrent_transforms: 每个实例的最大并发请求
            max_payload: 最大 payload 大小 (MB)
            tags: Tags
            env: 容器环境变量
            base_transform_job_name: 作业名前缀（默认由模型镜像名生成）
            sagemaker_session: Session（默认新建）
            volume_kms_key: 存储卷加密 KMS Key
        """
        self.model_name = model_name
        self.strategy = strategy
        self.env = env

        self.output_path = output_path
        self.output_kms_key = output_kms_key
        self.accept = accept
        self.assemble_with = assemble_with

        self.instance_count = instance_count
        self.instance_type = instance_type
        self.volume_kms_key = volume_kms_key

        self.max_concurrent_transforms = max_concurrent_transforms
        self.max_payload = max_payload
        self.tags = tags

        self.base_transform_job_name = base_transform_job_name
        self._current_job_name = None
        self.latest_transform_job = None
        self._reset_output_path = False

        self.sagemaker_session = sagemaker_session

    def _init_sagemaker_session_if_does_not_exist(self):
        if self.sagemaker_session is None:
            from .session import Session

            self.sagemaker_session = Session()

    def transform(
        self,
        data: str,
        data_type: str = "S3Prefix",
        content_type: Optional[str] = None,
        compression_type: Optional[str] = None,
        split_type: Optional[str] = None,
        job_name: Optional[str] = None,
        input_filter: Optional[str] = None,
        output_filter: Optional[str] = None,
        join_source: Optional[str] = None,
        experiment_config: Optional[dict] = None,
        model_client_config: Optional[dict] = None,
        wait: bool = True,
    ):
        """
        启动 Transform Job

        Args:
            data: 输入数据 S3 路径
            data_type: S3Prefix / ManifestFile
            content_type: 输入数据类型
            compression_type: 压缩格式 (Gzip)
            split_type: 分割方式 (Line, RecordIO, TFRecord, None)
            job_name: 作业名称（默认自动生成）
            input_filter: 输入 JSONPath 过滤
            output_filter: 输出 JSONPath 过滤
            join_source: 输出与输入合并方式 (Input, None)
            experiment_config: Experiment 配置
            model_client_config: 调用超时和重试配置
            wait: 是否等待完成

        Raises:
            ValueError: 不支持的 data_type
        """
        if data_type not in TRANSFORM_DATA_TYPES:
            raise ValueError(
                f"Invalid data_type: {data_type}. Valid values: {', '.join(TRANSFORM_DATA_TYPES)}"
            )

        self._init_sagemaker_session_if_does_not_exist()

        if job_name is not None:
            self._current_job_name = job_name
        else:
            base_name = self.base_transform_job_name or self._retrieve_base_name()
            self._current_job_name = name_from_base(base_name)

        if self.output_path is None or self._reset_output_path:
            self.output_path = s3_path_join(
                "s3://",
                self.sagemaker_session.default_bucket(),
                self.sagemaker_session.default_bucket_prefix,
                self._current_job_name,
            )
            self._reset_output_path = True

        self.sagemaker_session.transform(
            job_name=self._current_job_name,
            model_name=self.model_name,
            strategy=self.strategy,
            max_concurrent_transforms=self.max_concurrent_transforms,
            max_payload=self.max_payload,
            env=self.env,
            input_config=self._prepare_input_config(data, data_type, content_type, compression_type, split_type),
            output_config=self._prepare_output_config(),
            resource_config=self._prepare_resource_config(),
            experiment_config=experiment_config,
            tags=self.tags,
            data_processing=self._prepare_data_processing(input_filter, output_filter, join_source),
            model_client_config=model_client_config,
        )
        self.latest_transform_job = self._current_job_name
        logger.info("Transform job output: %s", self.output_path)

        if wait:
            self.wait()

    def _retrieve_base_name(self) -> str:
        image_uri = self._retrieve_image_uri()
        if image_uri:
            return base_name_from_image(image_uri)
        return self.model_name

    def _retrieve_image_uri(self) -> Optional[str]:
        """从 DescribeModel 获取主容器（或第一个容器）的镜像"""
        try:
            model_desc = self.sagemaker_session.describe_model(self.model_name)
        except ClientError as e:
            raise ValueError(
                f"Failed to fetch model information for {self.model_name}. "
                "Please ensure that the model exists."
            ) from e

        primary_container = model_desc.get("PrimaryContainer")
        if primary_container:
            return primary_container.get("Image")

        containers = model_desc.get("Containers")
        if containers:
            return containers[0].get("Image")

        return None

    @staticmethod
    def _prepare_input_config(data, data_type, content_type, compression_type, split_type) -> dict:
        config = {"DataSource": {"S3DataSource": {"S3DataType": data_type, "S3Uri": data}}}

        if content_type is not None:
            config["ContentType"] = content_type
        if compression_type is not None:
            config["CompressionType"] = compression_type
        if split_type is not None:
            config["SplitType"] = split_type

        return config

    def _prepare_output_config(self) -> dict:
        config = {"S3OutputPath": self.output_path}

        if self.output_kms_key is not None:
            config["KmsKeyId"] = self.output_kms_key
        if self.accept is not None:
            config["Accept"] = self.accept
        if self.assemble_with is not None:
            config["AssembleWith"] = self.assemble_with

        return config

    def _prepare_resource_config(self) -> dict:
        config = {"InstanceCount": self.instance_count, "InstanceType": self.instance_type}

        if self.volume_kms_key is not None:
            config["VolumeKmsKeyId"] = self.volume_kms_key

        return config

    @staticmethod
    def _prepare_data_processing(input_filter, output_filter, join_source) -> Optional[dict]:
        config = {}

        if input_filter is not None:
            config["InputFilter"] = input_filter
        if output_filter is not None:
            config["OutputFilter"] = output_filter
        if join_source is not None:
            config["JoinSource"] = join_source

        return config or None

    def _ensure_last_transform_job(self):
        if self.latest_transform_job is None:
            raise ValueError("No transform job available")

    def wait(self) -> dict:
        """等待最近一次 Transform Job 结束"""
        self._ensure_last_transform_job()
        return self.sagemaker_session.wait_for_transform_job(self.latest_transform_job)

    def stop_transform_job(self, wait: bool = True):
        """停止最近一次 Transform Job"""
        self._ensure_last_transform_job()
        self.sagemaker_session.stop_transform_job(name=self.latest_transform_job)
        if wait:
            self.sagemaker_session.wait_for_transform_job(self.latest_transform_job)

    def describe(self) -> dict:
        self._ensure_last_transform_job()
        return self.sagemaker_session.describe_transform_job(self.latest_transform_job)

    @classmethod
    def attach(cls, transform_job_name: str, sagemaker_session=None) -> "Transformer":
        """
        关联已有的 Transform Job

        Example:
            transformer = Transformer.attach("xgboost-2024-01-01-00-00-00-000")
            transformer.wait()
        """
        if sagemaker_session is None:
            from .session import Session

            sagemaker_session = Session()

        job_details = sagemaker_session.describe_transform_job(transform_job_name)
        init_params = cls._prepare_init_params_from_job_description(job_details)
        transformer = cls(sagemaker_session=sagemaker_session, **init_params)
        transformer.latest_transform_job = transform_job_name
        return transformer

    @classmethod
    def _prepare_init_params_from_job_description(cls, job_details: dict) -> dict:
        output = job_details["TransformOutput"]
        resources = job_details["TransformResources"]

        return {
            "model_name": job_details["ModelName"],
            "instance_count": resources["InstanceCount"],
            "instance_type": resources["InstanceType"],
            "volume_kms_key": resources.get("VolumeKmsKeyId"),
            "strategy": job_details.get("BatchStrategy"),
            "assemble_with": output.get("AssembleWith"),
            "output_path": output["S3OutputPath"],
            "output_kms_key": output.get("KmsKeyId"),
            "accept": output.get("Accept"),
            "max_concurrent_transforms": job_details.get("MaxConcurrentTransforms"),
            "max_payload": job_details.get("MaxPayloadInMB"),
            "env": job_details.get("Environment"),
            "base_transform_job_name": base_from_name(job_details["TransformJobName"]),
        }
