# =============================================================================
# session.py - SageMaker 控制面封装
# =============================================================================
# 封装 CreateTrainingJob / CreateModel / CreateEndpoint / CreateTransformJob /
# CreateHyperParameterTuningJob / CreateAutoMLJob 等调用，以及 S3 上传下载
# 自动注入默认 Tags 和 Studio 项目 Tags
# =============================================================================

import json
import logging
import os
import re
import time
from typing import Any, Callable, Dict, List, Optional, Union

import boto3
from botocore.exceptions import ClientError, WaiterError

from . import vpc_utils
from .config import SessionConfig, append_project_tags
from .exceptions import UnexpectedStatusException

logger = logging.getLogger(__name__)

NOTEBOOK_METADATA_FILE = "/opt/ml/metadata/resource-metadata.json"

# 各类作业的终止状态
JOB_TERMINAL_STATUSES = ("Completed", "Failed", "Stopped")
ENDPOINT_TERMINAL_STATUSES = ("InService", "Failed", "OutOfService")


class Session:
    """
    SageMaker 控制面会话

    管理 boto3 客户端、默认 Bucket，并负责把各类作业参数组装成
    SageMaker API 请求。

    Example:
        session = Session(config=get_config())
        session.upload_data("data/train.csv", key_prefix="datasets")
    """

    def __init__(
        self,
        boto_session: boto3.session.Session = None,
        sagemaker_client=None,
        sagemaker_runtime_client=None,
        default_bucket: Optional[str] = None,
        config: SessionConfig = None,
    ):
        self.config = config

        if boto_session is None:
            region = config.region if config is not None else None
            boto_session = boto3.session.Session(region_name=region)
        self.boto_session = boto_session

        self._region_name = self.boto_session.region_name or (config.region if config else None)
        if self._region_name is None:
            raise ValueError(
                "Must setup local AWS configuration with a region supported by SageMaker."
            )

        self.sagemaker_client = sagemaker_client or self.boto_session.client("sagemaker")
        self.sagemaker_runtime_client = sagemaker_runtime_client or self.boto_session.client(
            "sagemaker-runtime"
        )
        self._s3_client = None

        self._default_bucket_name_override = default_bucket or (config.bucket if config else None)
        self._default_bucket = None

    @property
    def boto_region_name(self) -> str:
        return self._region_name

    @property
    def s3_client(self):
        if self._s3_client is None:
            self._s3_client = self.boto_session.client("s3", region_name=self.boto_region_name)
        return self._s3_client

    @property
    def default_bucket_prefix(self) -> str:
        return self.config.bucket_prefix if self.config is not None else ""

    # =========================================================================
    # Tags / VPC
    # =========================================================================

    def _with_default_tags(self, tags: Optional[List[dict]]) -> Optional[List[dict]]:
        """合并调用方 Tags、配置中的默认 Tags 和 Studio 项目 Tags"""
        merged = list(tags or [])
        keys = {t["Key"] for t in merged}
        if self.config is not None:
            merged.extend(t for t in self.config.get_default_tags() if t["Key"] not in keys)
        merged = append_project_tags(merged)
        return merged or None

    def default_vpc_config(self) -> Optional[dict]:
        """配置中的 VPC（未配置时为 None）"""
        return self.config.get_vpc_config() if self.config is not None else None

    # =========================================================================
    # S3
    # =========================================================================

    def default_bucket(self) -> str:
        """
        获取默认 Bucket（不存在时自动创建）

        默认名称为 sagemaker-{region}-{account_id}
        """
        if self._default_bucket:
            return self._default_bucket

        region = self.boto_region_name
        bucket = self._default_bucket_name_override
        if not bucket:
            sts = self.boto_session.client("sts", region_name=region)
            account = sts.get_caller_identity()["Account"]
            bucket = f"sagemaker-{region}-{account}"

        self._create_s3_bucket_if_it_does_not_exist(bucket, region)
        self._default_bucket = bucket
        return bucket

    def _create_s3_bucket_if_it_does_not_exist(self, bucket_name: str, region: str):
        s3 = self.s3_client
        try:
            s3.head_bucket(Bucket=bucket_name)
            return
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            if error_code == "403":
                logger.warning(
                    "Bucket %s exists, but access is forbidden. Using it as is.", bucket_name
                )
                return
            if error_code not in ("404", "NoSuchBucket"):
                raise

        try:
            if region == "us-east-1":
                # us-east-1 不接受 LocationConstraint
                s3.create_bucket(Bucket=bucket_name)
            else:
                s3.create_bucket(
                    Bucket=bucket_name,
                    CreateBucketConfiguration={"LocationConstraint": region},
                )
            logger.info("Created S3 bucket: %s", bucket_name)
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            if error_code not in ("BucketAlreadyOwnedByYou", "OperationAborted"):
                raise

    def upload_data(
        self,
        path: str,
        bucket: Optional[str] = None,
        key_prefix: str = "data",
        extra_args: Optional[dict] = None,
    ) -> str:
        """
        上传本地文件或目录到 S3

        Args:
            path: 本地文件或目录
            bucket: 目标 Bucket（默认 default_bucket()）
            key_prefix: 目标前缀
            extra_args: 传给 upload_file 的 ExtraArgs（例如 KMS 加密）

        Returns:
            文件时返回对象 URI，目录时返回前缀 URI
        """
        key_prefix = key_prefix.strip("/")
        files = []
        key_suffix = None

        if os.path.isdir(path):
            for dirpath, _, filenames in os.walk(path):
                for name in filenames:
                    local_path = os.path.join(dirpath, name)
                    relative_dir = os.path.relpath(dirpath, start=path)
                    parts = [key_prefix, "" if relative_dir == "." else relative_dir, name]
                    files.append((local_path, "/".join(p for p in parts if p)))
        else:
            _, name = os.path.split(path)
            files.append((path, "/".join(p for p in [key_prefix, name] if p)))
            key_suffix = name

        bucket = bucket or self.default_bucket()
        for local_path, s3_key in files:
            logger.debug("Uploading %s to s3://%s/%s", local_path, bucket, s3_key)
            self.s3_client.upload_file(local_path, bucket, s3_key, ExtraArgs=extra_args)

        s3_uri = f"s3://{bucket}/{key_prefix}" if key_prefix else f"s3://{bucket}"
        if key_suffix:
            s3_uri = f"{s3_uri}/{key_suffix}"
        return s3_uri

    def upload_string_as_file_body(
        self, body: str, bucket: str, key: str, kms_key: Optional[str] = None
    ) -> str:
        """上传字符串作为 S3 对象内容，返回对象 URI"""
        put_args = {"Body": body, "Bucket": bucket, "Key": key}
        if kms_key:
            put_args.update({"SSEKMSKeyId": kms_key, "ServerSideEncryption": "aws:kms"})
        self.s3_client.put_object(**put_args)
        return f"s3://{bucket}/{key}"

    def read_s3_file(self, bucket: str, key_prefix: str) -> str:
        """读取 S3 对象内容（UTF-8）"""
        response = self.s3_client.get_object(Bucket=bucket, Key=key_prefix)
        return response["Body"].read().decode("utf-8")

    def list_s3_files(self, bucket: str, key_prefix: str) -> List[str]:
        """列出前缀下的所有对象 Key"""
        keys = []
        paginator = self.s3_client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket, Prefix=key_prefix):
            for obj in page.get("Contents", []):
                keys.append(obj["Key"])
        return keys

    def download_data(
        self,
        path: str,
        bucket: str,
        key_prefix: str = "",
        extra_args: Optional[dict] = None,
    ) -> List[str]:
        """
        下载 S3 对象或前缀到本地目录

        Returns:
            本地文件路径列表
        """
        keys = [k for k in self.list_s3_files(bucket, key_prefix) if not k.endswith("/")]
        downloaded = []
        for key in keys:
            if key == key_prefix:
                tail = os.path.basename(key)
            else:
                tail = os.path.relpath(key, key_prefix.rstrip("/") or ".")
            destination = os.path.join(path, tail)
            os.makedirs(os.path.dirname(destination) or ".", exist_ok=True)
            self.s3_client.download_file(bucket, key, destination, ExtraArgs=extra_args)
            downloaded.append(destination)
        return downloaded

    # =========================================================================
    # IAM
    # =========================================================================

    def expand_role(self, role: str) -> str:
        """角色名转完整 ARN（已经是 ARN 时原样返回）"""
        if "/" in role:
            return role
        iam = self.boto_session.client("iam")
        return iam.get_role(RoleName=role)["Role"]["Arn"]

    def get_caller_identity_arn(self) -> str:
        """
        获取当前身份对应的 IAM 角色 ARN

        在 Notebook Instance 上直接读取实例角色，否则把 STS assumed-role ARN
        转换成 IAM role ARN。
        """
        if os.path.exists(NOTEBOOK_METADATA_FILE):
            with open(NOTEBOOK_METADATA_FILE) as f:
                metadata = json.load(f)
            instance_name = metadata.get("ResourceName")
            try:
                instance_desc = self.sagemaker_client.describe_notebook_instance(
                    NotebookInstanceName=instance_name
                )
                return instance_desc["RoleArn"]
            except ClientError:
                logger.debug(
                    "Couldn't call 'describe_notebook_instance' to get the Role ARN of the instance %s.",
                    instance_name,
                )

        sts = self.boto_session.client("sts", region_name=self.boto_region_name)
        assumed_role = sts.get_caller_identity()["Arn"]
        role = re.sub(r"^(.+)sts::(\d+):assumed-role/(.+?)/.*$", r"\1iam::\2:role/\3", assumed_role)

        # 通过 IAM 获取带 path 的完整 ARN
        role_name = role[role.rfind("/") + 1 :]
        try:
            role = self.boto_session.client("iam").get_role(RoleName=role_name)["Role"]["Arn"]
        except ClientError:
            logger.warning(
                "Couldn't call 'get_role' to get Role ARN from role name %s to get Role path.",
                role_name,
            )
        return role

    # =========================================================================
    # Training Job
    # =========================================================================

    def train(
        self,
        input_mode: str,
        input_config: Optional[List[dict]],
        role: str,
        job_name: str,
        output_config: dict,
        resource_config: dict,
        vpc_config: Optional[dict],
        hyperparameters: Optional[Dict[str, str]],
        stop_condition: dict,
        tags: Optional[List[dict]],
        metric_definitions: Optional[List[dict]],
        enable_network_isolation: bool = False,
        image_uri: Optional[str] = None,
        algorithm_arn: Optional[str] = None,
        encrypt_inter_container_traffic: bool = False,
        use_spot_instances: bool = False,
        checkpoint_s3_uri: Optional[str] = None,
        checkpoint_local_path: Optional[str] = None,
        experiment_config: Optional[dict] = None,
        enable_sagemaker_metrics: Optional[bool] = None,
        environment: Optional[Dict[str, str]] = None,
    ) -> dict:
        """
        创建 Training Job

        Returns:
            CreateTrainingJob 响应
        """
        train_request = {
            "AlgorithmSpecification": {"TrainingInputMode": input_mode},
            "OutputDataConfig": output_config,
            "TrainingJobName": job_name,
            "StoppingCondition": stop_condition,
            "ResourceConfig": resource_config,
            "RoleArn": role,
        }

        if image_uri and algorithm_arn:
            raise ValueError(
                "image_uri and algorithm_arn are mutually exclusive. "
                f"Both were provided: image_uri: {image_uri} algorithm_arn: {algorithm_arn}"
            )
        if image_uri is None and algorithm_arn is None:
            raise ValueError("either image_uri or algorithm_arn is required. None was provided.")

        if image_uri is not None:
            train_request["AlgorithmSpecification"]["TrainingImage"] = image_uri
        if algorithm_arn is not None:
            train_request["AlgorithmSpecification"]["AlgorithmName"] = algorithm_arn
        if metric_definitions is not None:
            train_request["AlgorithmSpecification"]["MetricDefinitions"] = metric_definitions
        if enable_sagemaker_metrics is not None:
            train_request["AlgorithmSpecification"][
                "EnableSageMakerMetricsTimeSeries"
            ] = enable_sagemaker_metrics

        if input_config is not None:
            train_request["InputDataConfig"] = input_config
        if hyperparameters:
            train_request["HyperParameters"] = hyperparameters
        if environment:
            train_request["Environment"] = environment

        tags = self._with_default_tags(tags)
        if tags is not None:
            train_request["Tags"] = tags

        if vpc_config is not None:
            train_request["VpcConfig"] = vpc_config
        if experiment_config:
            train_request["ExperimentConfig"] = experiment_config
        if enable_network_isolation:
            train_request["EnableNetworkIsolation"] = enable_network_isolation
        if encrypt_inter_container_traffic:
            train_request["EnableInterContainerTrafficEncryption"] = encrypt_inter_container_traffic
        if use_spot_instances:
            train_request["EnableManagedSpotTraining"] = use_spot_instances

        if checkpoint_s3_uri:
            checkpoint_config = {"S3Uri": checkpoint_s3_uri}
            if checkpoint_local_path:
                checkpoint_config["LocalPath"] = checkpoint_local_path
            train_request["CheckpointConfig"] = checkpoint_config

        logger.info("Creating training-job with name: %s", job_name)
        logger.debug("train request: %s", json.dumps(train_request, indent=4))
        return self.sagemaker_client.create_training_job(**train_request)

    def describe_training_job(self, job_name: str) -> dict:
        return self.sagemaker_client.describe_training_job(TrainingJobName=job_name)

    def stop_training_job(self, job_name: str):
        logger.info("Stopping training job: %s", job_name)
        self.sagemaker_client.stop_training_job(TrainingJobName=job_name)

    def wait_for_job(self, job: str, poll: int = 30, max_attempts: int = 2880) -> dict:
        """
        等待 Training Job 结束

        Returns:
            DescribeTrainingJob 响应

        Raises:
            UnexpectedStatusException: 作业失败
        """
        logger.info("Waiting for training job to complete: %s", job)
        waiter = self.sagemaker_client.get_waiter("training_job_completed_or_stopped")
        desc = self._wait_with_waiter(
            waiter,
            {"TrainingJobName": job},
            lambda: self.describe_training_job(job),
            "TrainingJobStatus",
            JOB_TERMINAL_STATUSES,
            poll,
            max_attempts,
        )
        self._check_job_status(job, desc, "TrainingJobStatus")
        return desc

    # =========================================================================
    # Model / Endpoint
    # =========================================================================

    def create_model(
        self,
        name: str,
        role: str,
        container_defs: Union[dict, List[dict], None] = None,
        vpc_config: Optional[dict] = None,
        enable_network_isolation: bool = False,
        primary_container: Optional[dict] = None,
        tags: Optional[List[dict]] = None,
    ) -> str:
        """
        创建 SageMaker Model

        单个容器放入 PrimaryContainer，容器列表放入 Containers（推理管道）。
        模型已存在时直接复用。

        Returns:
            模型名称
        """
        if container_defs and primary_container:
            raise ValueError("Both container_defs and primary_container can not be passed as input")

        container_definition = primary_container or container_defs

        create_params = {
            "ModelName": name,
            "ExecutionRoleArn": self.expand_role(role),
        }
        if isinstance(container_definition, list):
            create_params["Containers"] = container_definition
        else:
            create_params["PrimaryContainer"] = container_definition

        tags = self._with_default_tags(tags)
        if tags is not None:
            create_params["Tags"] = tags

        vpc_config = vpc_utils.sanitize(vpc_config)
        if vpc_config:
            create_params["VpcConfig"] = vpc_config
        if enable_network_isolation:
            create_params["EnableNetworkIsolation"] = True

        logger.info("Creating model with name: %s", name)
        logger.debug("CreateModel request: %s", json.dumps(create_params, indent=4))

        try:
            self.sagemaker_client.create_model(**create_params)
        except ClientError as e:
            message = e.response["Error"]["Message"]
            if "already exist" in message:
                logger.warning("Using already existing model: %s", name)
            else:
                raise

        return name

    def describe_model(self, name: str) -> dict:
        return self.sagemaker_client.describe_model(ModelName=name)

    def delete_model(self, model_name: str) -> bool:
        """
        删除模型

        Returns:
            True 表示已删除，False 表示模型不存在
        """
        logger.info("Deleting model with name: %s", model_name)
        try:
            self.sagemaker_client.delete_model(ModelName=model_name)
        except ClientError as e:
            if "Could not find" in e.response["Error"]["Message"]:
                logger.warning("Model not found: %s", model_name)
                return False
            raise
        return True

    def create_endpoint_config(
        self,
        name: str,
        model_name: str,
        initial_instance_count: Optional[int],
        instance_type: Optional[str],
        accelerator_type: Optional[str] = None,
        tags: Optional[List[dict]] = None,
        kms_key: Optional[str] = None,
        data_capture_config_dict: Optional[dict] = None,
        serverless_inference_config: Optional[dict] = None,
    ) -> str:
        """创建单 Variant 的 EndpointConfig，返回配置名称"""
        logger.info("Creating endpoint-config with name %s", name)

        variant = production_variant(
            model_name,
            instance_type,
            initial_instance_count,
            accelerator_type=accelerator_type,
            serverless_inference_config=serverless_inference_config,
        )
        request = {"EndpointConfigName": name, "ProductionVariants": [variant]}

        tags = self._with_default_tags(tags)
        if tags is not None:
            request["Tags"] = tags
        if kms_key is not None:
            request["KmsKeyId"] = kms_key
        if data_capture_config_dict is not None:
            request["DataCaptureConfig"] = data_capture_config_dict

        self.sagemaker_client.create_endpoint_config(**request)
        return name

    def create_endpoint_config_from_existing(
        self,
        existing_config_name: str,
        new_config_name: str,
        new_tags: Optional[List[dict]] = None,
        new_kms_key: Optional[str] = None,
        new_data_capture_config_dict: Optional[dict] = None,
        new_production_variants: Optional[List[dict]] = None,
    ) -> str:
        """以已有 EndpointConfig 为模板创建新的 EndpointConfig，未指定的部分沿用原配置"""
        logger.info("Creating endpoint-config with name %s", new_config_name)

        existing_config = self.describe_endpoint_config(existing_config_name)
        request = {
            "EndpointConfigName": new_config_name,
            "ProductionVariants": new_production_variants or existing_config["ProductionVariants"],
        }

        tags = self._with_default_tags(new_tags)
        if tags is not None:
            request["Tags"] = tags

        kms_key = new_kms_key or existing_config.get("KmsKeyId")
        if kms_key is not None:
            request["KmsKeyId"] = kms_key

        data_capture_config_dict = new_data_capture_config_dict or existing_config.get(
            "DataCaptureConfig"
        )
        if data_capture_config_dict is not None:
            request["DataCaptureConfig"] = data_capture_config_dict

        self.sagemaker_client.create_endpoint_config(**request)
        return new_config_name

    def describe_endpoint_config(self, name: str) -> dict:
        return self.sagemaker_client.describe_endpoint_config(EndpointConfigName=name)

    def delete_endpoint_config(self, endpoint_config_name: str) -> bool:
        logger.info("Deleting endpoint configuration with name: %s", endpoint_config_name)
        try:
            self.sagemaker_client.delete_endpoint_config(EndpointConfigName=endpoint_config_name)
        except ClientError as e:
            if "Could not find" in e.response["Error"]["Message"]:
                logger.warning("Endpoint configuration not found: %s", endpoint_config_name)
                return False
            raise
        return True

    def create_endpoint(
        self,
        endpoint_name: str,
        config_name: str,
        tags: Optional[List[dict]] = None,
        wait: bool = True,
    ) -> str:
        """
        创建 Endpoint（已存在时更新为新的 EndpointConfig）

        Returns:
            Endpoint 名称
        """
        logger.info("Creating endpoint with name %s", endpoint_name)

        request = {"EndpointName": endpoint_name, "EndpointConfigName": config_name}
        tags = self._with_default_tags(tags)
        if tags is not None:
            request["Tags"] = tags

        try:
            self.sagemaker_client.create_endpoint(**request)
        except ClientError as e:
            if "Cannot create already existing" not in e.response["Error"]["Message"]:
                raise
            logger.warning("Endpoint exists, updating: %s", endpoint_name)
            self.sagemaker_client.update_endpoint(
                EndpointName=endpoint_name, EndpointConfigName=config_name
            )

        if wait:
            self.wait_for_endpoint(endpoint_name)
        return endpoint_name

    def update_endpoint(self, endpoint_name: str, endpoint_config_name: str, wait: bool = True) -> str:
        """
        把 Endpoint 切换到新的 EndpointConfig（蓝绿部署）

        Raises:
            ValueError: Endpoint 不存在
        """
        if not _deployment_entity_exists(
            lambda: self.sagemaker_client.describe_endpoint(EndpointName=endpoint_name)
        ):
            raise ValueError(
                f"Endpoint with name '{endpoint_name}' does not exist; "
                "please use an existing endpoint name"
            )

        logger.info("Updating endpoint %s to config %s", endpoint_name, endpoint_config_name)
        self.sagemaker_client.update_endpoint(
            EndpointName=endpoint_name, EndpointConfigName=endpoint_config_name
        )

        if wait:
            self.wait_for_endpoint(endpoint_name)
        return endpoint_name

    def describe_endpoint(self, endpoint_name: str) -> dict:
        return self.sagemaker_client.describe_endpoint(EndpointName=endpoint_name)

    def delete_endpoint(self, endpoint_name: str) -> bool:
        """删除 Endpoint，不存在时只告警并返回 False"""
        logger.info("Deleting endpoint with name: %s", endpoint_name)
        try:
            self.sagemaker_client.delete_endpoint(EndpointName=endpoint_name)
        except ClientError as e:
            if "Could not find" in e.response["Error"]["Message"]:
                logger.warning("Endpoint not found: %s", endpoint_name)
                return False
            raise
        return True

    def endpoint_from_production_variants(
        self,
        name: str,
        production_variants: List[dict],
        tags: Optional[List[dict]] = None,
        kms_key: Optional[str] = None,
        wait: bool = True,
        data_capture_config_dict: Optional[dict] = None,
    ) -> str:
        """
        用给定的 ProductionVariants 创建同名 EndpointConfig 和 Endpoint

        Returns:
            Endpoint 名称
        """
        config_options = {"EndpointConfigName": name, "ProductionVariants": production_variants}
        tags = self._with_default_tags(tags)
        if tags is not None:
            config_options["Tags"] = tags
        if kms_key:
            config_options["KmsKeyId"] = kms_key
        if data_capture_config_dict is not None:
            config_options["DataCaptureConfig"] = data_capture_config_dict

        logger.info("Creating endpoint-config with name %s", name)
        self.sagemaker_client.create_endpoint_config(**config_options)

        return self.create_endpoint(endpoint_name=name, config_name=name, tags=tags, wait=wait)

    def wait_for_endpoint(self, endpoint: str, poll: int = 30, max_attempts: int = 120) -> dict:
        """
        等待 Endpoint 进入 InService

        Raises:
            UnexpectedStatusException: Endpoint 创建失败
        """
        logger.info("Waiting for endpoint to be InService: %s", endpoint)
        waiter = self.sagemaker_client.get_waiter("endpoint_in_service")
        desc = self._wait_with_waiter(
            waiter,
            {"EndpointName": endpoint},
            lambda: self.describe_endpoint(endpoint),
            "EndpointStatus",
            ENDPOINT_TERMINAL_STATUSES,
            poll,
            max_attempts,
        )

        status = desc["EndpointStatus"]
        if status != "InService":
            reason = desc.get("FailureReason", "(No reason provided)")
            raise UnexpectedStatusException(
                message=f"Error hosting endpoint {endpoint}: {status}. Reason: {reason}.",
                allowed_statuses=["InService"],
                actual_status=status,
            )

        logger.info("Endpoint is InService: %s", endpoint)
        return desc

    # =========================================================================
    # Transform Job
    # =========================================================================

    def transform(
        self,
        job_name: str,
        model_name: str,
        strategy: Optional[str],
        max_concurrent_transforms: Optional[int],
        max_payload: Optional[int],
        env: Optional[Dict[str, str]],
        input_config: dict,
        output_config: dict,
        resource_config: dict,
        experiment_config: Optional[dict] = None,
        tags: Optional[List[dict]] = None,
        data_processing: Optional[dict] = None,
        model_client_config: Optional[dict] = None,
    ) -> dict:
        """创建 Batch Transform Job"""
        transform_request = {
            "TransformJobName": job_name,
            "ModelName": model_name,
            "TransformInput": input_config,
            "TransformOutput": output_config,
            "TransformResources": resource_config,
        }

        if strategy is not None:
            transform_request["BatchStrategy"] = strategy
        if max_concurrent_transforms is not None:
            transform_request["MaxConcurrentTransforms"] = max_concurrent_transforms
        if max_payload is not None:
            transform_request["MaxPayloadInMB"] = max_payload
        if env is not None:
            transform_request["Environment"] = env

        tags = self._with_default_tags(tags)
        if tags is not None:
            transform_request["Tags"] = tags

        if data_processing is not None:
            transform_request["DataProcessing"] = data_processing
        if experiment_config:
            transform_request["ExperimentConfig"] = experiment_config
        if model_client_config:
            transform_request["ModelClientConfig"] = model_client_config

        logger.info("Creating transform job with name: %s", job_name)
        logger.debug("Transform request: %s", json.dumps(transform_request, indent=4))
        return self.sagemaker_client.create_transform_job(**transform_request)

    def describe_transform_job(self, job_name: str) -> dict:
        return self.sagemaker_client.describe_transform_job(TransformJobName=job_name)

    def stop_transform_job(self, name: str):
        logger.info("Stopping transform job: %s", name)
        self.sagemaker_client.stop_transform_job(TransformJobName=name)

    def wait_for_transform_job(self, job: str, poll: int = 30, max_attempts: int = 2880) -> dict:
        """等待 Transform Job 结束"""
        logger.info("Waiting for transform job to complete: %s", job)
        waiter = self.sagemaker_client.get_waiter("transform_job_completed_or_stopped")
        desc = self._wait_with_waiter(
            waiter,
            {"TransformJobName": job},
            lambda: self.describe_transform_job(job),
            "TransformJobStatus",
            JOB_TERMINAL_STATUSES,
            poll,
            max_attempts,
        )
        self._check_job_status(job, desc, "TransformJobStatus")
        return desc

    # =========================================================================
    # Hyperparameter Tuning Job
    # =========================================================================

    def create_tuning_job(
        self,
        job_name: str,
        tuning_config: dict,
        training_config: dict,
        warm_start_config: Optional[dict] = None,
        tags: Optional[List[dict]] = None,
    ) -> dict:
        """创建超参数调优作业"""
        tune_request = {
            "HyperParameterTuningJobName": job_name,
            "HyperParameterTuningJobConfig": tuning_config,
            "TrainingJobDefinition": training_config,
        }
        if warm_start_config is not None:
            tune_request["WarmStartConfig"] = warm_start_config

        tags = self._with_default_tags(tags)
        if tags is not None:
            tune_request["Tags"] = tags

        logger.info("Creating hyperparameter tuning job with name: %s", job_name)
        logger.debug("tune request: %s", json.dumps(tune_request, indent=4))
        return self.sagemaker_client.create_hyper_parameter_tuning_job(**tune_request)

    def describe_tuning_job(self, job_name: str) -> dict:
        return self.sagemaker_client.describe_hyper_parameter_tuning_job(
            HyperParameterTuningJobName=job_name
        )

    def stop_tuning_job(self, name: str):
        logger.info("Stopping tuning job: %s", name)
        self.sagemaker_client.stop_hyper_parameter_tuning_job(HyperParameterTuningJobName=name)

    def wait_for_tuning_job(self, job: str, poll: int = 5, max_attempts: int = 17280) -> dict:
        """轮询等待调优作业结束"""
        logger.info("Waiting for tuning job to complete: %s", job)
        desc = _wait_until(
            lambda: self.describe_tuning_job(job),
            "HyperParameterTuningJobStatus",
            JOB_TERMINAL_STATUSES,
            poll,
            max_attempts,
        )
        self._check_job_status(job, desc, "HyperParameterTuningJobStatus")
        return desc

    # =========================================================================
    # AutoML Job
    # =========================================================================

    def auto_ml(
        self,
        input_config: List[dict],
        output_config: dict,
        auto_ml_job_config: dict,
        role: str,
        job_name: str,
        problem_type: Optional[str] = None,
        job_objective: Optional[dict] = None,
        generate_candidate_definitions_only: bool = False,
        tags: Optional[List[dict]] = None,
        model_deploy_config: Optional[dict] = None,
    ) -> dict:
        """创建 AutoML (Autopilot) 作业"""
        auto_ml_job_request = {
            "AutoMLJobName": job_name,
            "InputDataConfig": input_config,
            "OutputDataConfig": output_config,
            "AutoMLJobConfig": auto_ml_job_config,
            "RoleArn": role,
            "GenerateCandidateDefinitionsOnly": generate_candidate_definitions_only,
        }

        if model_deploy_config and model_deploy_config.get("EndpointName"):
            auto_ml_job_request["ModelDeployConfig"] = model_deploy_config
        elif model_deploy_config and model_deploy_config.get("AutoGenerateEndpointName"):
            auto_ml_job_request["ModelDeployConfig"] = model_deploy_config

        if job_objective is not None:
            auto_ml_job_request["AutoMLJobObjective"] = job_objective
        if problem_type is not None:
            auto_ml_job_request["ProblemType"] = problem_type

        tags = self._with_default_tags(tags)
        if tags is not None:
            auto_ml_job_request["Tags"] = tags

        logger.info("Creating auto-ml-job with name: %s", job_name)
        logger.debug("auto ml request: %s", json.dumps(auto_ml_job_request, indent=4))
        return self.sagemaker_client.create_auto_ml_job(**auto_ml_job_request)

    def describe_auto_ml_job(self, job_name: str) -> dict:
        return self.sagemaker_client.describe_auto_ml_job(AutoMLJobName=job_name)

    def stop_auto_ml_job(self, job_name: str):
        logger.info("Stopping auto-ml job: %s", job_name)
        self.sagemaker_client.stop_auto_ml_job(AutoMLJobName=job_name)

    def list_candidates(
        self,
        job_name: str,
        status_equals: Optional[str] = None,
        candidate_name: Optional[str] = None,
        candidate_arn: Optional[str] = None,
        sort_order: Optional[str] = None,
        sort_by: Optional[str] = None,
        max_results: Optional[int] = None,
    ) -> List[dict]:
        """列出 AutoML 作业的候选模型"""
        list_candidates_args = {"AutoMLJobName": job_name}

        if status_equals:
            list_candidates_args["StatusEquals"] = status_equals
        if candidate_name:
            list_candidates_args["CandidateNameEquals"] = candidate_name
        if candidate_arn:
            list_candidates_args["CandidateArnEquals"] = candidate_arn
        if sort_order:
            list_candidates_args["SortOrder"] = sort_order
        if sort_by:
            list_candidates_args["SortBy"] = sort_by
        if max_results:
            list_candidates_args["MaxResults"] = max_results

        return self.sagemaker_client.list_candidates_for_auto_ml_job(**list_candidates_args)[
            "Candidates"
        ]

    def wait_for_auto_ml_job(self, job: str, poll: int = 5, max_attempts: int = 17280) -> dict:
        """轮询等待 AutoML 作业结束"""
        logger.info("Waiting for auto-ml job to complete: %s", job)
        desc = _wait_until(
            lambda: self.describe_auto_ml_job(job),
            "AutoMLJobStatus",
            JOB_TERMINAL_STATUSES,
            poll,
            max_attempts,
        )
        self._check_job_status(job, desc, "AutoMLJobStatus")
        return desc

    # =========================================================================
    # 等待 / 状态检查
    # =========================================================================

    def _wait_with_waiter(
        self,
        waiter,
        waiter_args: dict,
        describe_fn: Callable[[], dict],
        status_key: str,
        terminal_statuses,
        poll: int,
        max_attempts: int,
    ) -> dict:
        """用 boto3 waiter 等待，失败状态交给调用方按 Describe 结果处理"""
        try:
            waiter.wait(**waiter_args, WaiterConfig={"Delay": poll, "MaxAttempts": max_attempts})
        except WaiterError as e:
            desc = describe_fn()
            if desc[status_key] not in terminal_statuses:
                raise
            logger.debug("Waiter stopped with terminal status %s: %s", desc[status_key], e)
            return desc
        return describe_fn()

    def _check_job_status(self, job: str, desc: dict, status_key_name: str):
        """
        检查作业终止状态

        Raises:
            UnexpectedStatusException: 状态既不是 Completed 也不是 Stopped
        """
        status = desc[status_key_name]
        job_type = status_key_name.replace("JobStatus", " job")

        if status == "Stopped":
            logger.warning(
                "%s %s ended with status 'Stopped' rather than 'Completed'. "
                "This could mean the job timed out or stopped early for some other reason: "
                "Consider checking whether it completed as you expect.",
                job_type,
                job,
            )
            return

        if status != "Completed":
            reason = desc.get("FailureReason", "(No reason provided)")
            message = f"Error for {job_type} {job}: {status}. Reason: {reason}"
            raise UnexpectedStatusException(
                message=message,
                allowed_statuses=["Completed", "Stopped"],
                actual_status=status,
            )


# =============================================================================
# 请求构建辅助函数
# =============================================================================


def container_def(
    image_uri: str,
    model_data_url: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    container_mode: Optional[str] = None,
    image_config: Optional[dict] = None,
) -> dict:
    """
    构建 CreateModel 的容器定义

    Example:
        container_def(
            "123456789.dkr.ecr.us-west-2.amazonaws.com/sagemaker-xgboost:1.7-1",
            model_data_url="s3://bucket/model.tar.gz",
        )
    """
    c_def = {"Image": image_uri, "Environment": env or {}}
    if model_data_url:
        c_def["ModelDataUrl"] = model_data_url
    if container_mode:
        c_def["Mode"] = container_mode
    if image_config:
        c_def["ImageConfig"] = image_config
    return c_def


def pipeline_container_def(models, instance_type: Optional[str] = None) -> List[dict]:
    """按顺序收集多个 Model 的容器定义（推理管道）"""
    return [model.prepare_container_def(instance_type) for model in models]


def production_variant(
    model_name: str,
    instance_type: Optional[str] = None,
    initial_instance_count: Optional[int] = None,
    variant_name: str = "AllTraffic",
    initial_weight: float = 1,
    accelerator_type: Optional[str] = None,
    serverless_inference_config: Optional[dict] = None,
) -> dict:
    """
    构建 EndpointConfig 的 ProductionVariant

    Serverless 模式使用 ServerlessConfig，否则使用实例类型和数量。
    """
    variant = {
        "ModelName": model_name,
        "VariantName": variant_name,
        "InitialVariantWeight": initial_weight,
    }

    if accelerator_type:
        variant["AcceleratorType"] = accelerator_type

    if serverless_inference_config:
        variant["ServerlessConfig"] = serverless_inference_config
    else:
        variant["InstanceType"] = instance_type
        variant["InitialInstanceCount"] = initial_instance_count or 1

    return variant


def get_execution_role(sagemaker_session: Session = None) -> str:
    """
    获取 SageMaker 执行角色 ARN

    优先使用配置中的角色，否则使用当前调用身份。

    Raises:
        ValueError: 当前身份不是 IAM 角色
    """
    if sagemaker_session is None:
        sagemaker_session = Session()

    if sagemaker_session.config is not None and sagemaker_session.config.role_arn:
        return sagemaker_session.config.role_arn

    arn = sagemaker_session.get_caller_identity_arn()
    if ":role/" in arn:
        return arn

    raise ValueError(
        f"The current AWS identity is not a role: {arn}, therefore it cannot be used as a "
        "SageMaker execution role"
    )


def _deployment_entity_exists(describe_fn: Callable[[], Any]) -> bool:
    try:
        describe_fn()
        return True
    except ClientError as ce:
        error_code = ce.response["Error"]["Code"]
        if not (
            error_code == "ValidationException"
            and "Could not find" in ce.response["Error"]["Message"]
        ):
            raise
        return False


def _wait_until(
    describe_fn: Callable[[], dict],
    status_key: str,
    terminal_statuses,
    poll: int,
    max_attempts: int,
) -> dict:
    """
    轮询 Describe 直到进入终止状态

    Raises:
        WaiterError: 轮询 max_attempts 次后仍未结束
    """
    desc = describe_fn()
    attempts = 1
    while desc[status_key] not in terminal_statuses:
        if attempts >= max_attempts:
            raise WaiterError(
                name=status_key,
                reason=f"Max attempts exceeded ({max_attempts}), last status: {desc[status_key]}",
                last_response=desc,
            )
        time.sleep(poll)
        desc = describe_fn()
        attempts += 1
    return desc
