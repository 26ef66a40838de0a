# =============================================================================
# estimator.py - 训练作业 Estimator
# =============================================================================
# EstimatorBase: 训练作业的通用参数、fit / wait / attach / deploy
# Estimator:     使用任意训练镜像的通用 Estimator
# Framework:     使用框架镜像 + 用户训练脚本 (entry_point) 的 Estimator
# =============================================================================

import abc
import json
import logging
from typing import Dict, List, Optional

from . import image_uris, job, vpc_utils
from .fw_utils import (
    framework_name_from_image,
    framework_version_from_tag,
    tar_and_upload_dir,
    validate_source_dir,
    validate_version_or_image_args,
)
from .model import (
    CONTAINER_LOG_LEVEL_PARAM_NAME,
    DIR_PARAM_NAME,
    JOB_NAME_PARAM_NAME,
    SAGEMAKER_REGION_PARAM_NAME,
    SCRIPT_PARAM_NAME,
    Model,
)
from .predictor import Predictor
from .s3 import parse_s3_url, s3_path_join
from .session import Session
from .utils import base_from_name, base_name_from_image, name_from_base

logger = logging.getLogger(__name__)


class EstimatorBase(abc.ABC):
    """
    训练作业基类

    子类需要实现 training_image_uri() / hyperparameters() / create_model()
    """

    def __init__(
        self,
        role: str,
        instance_count: Optional[int] = None,
        instance_type: Optional[str] = None,
        volume_size: int = 30,
        volume_kms_key: Optional[str] = None,
        max_run: int = 24 * 60 * 60,
        input_mode: str = "File",
        output_path: Optional[str] = None,
        output_kms_key: Optional[str] = None,
        base_job_name: Optional[str] = None,
        sagemaker_session: Session = None,
        tags: Optional[List[dict]] = None,
        subnets: Optional[List[str]] = None,
        security_group_ids: Optional[List[str]] = None,
        model_uri: Optional[str] = None,
        model_channel_name: str = "model",
        metric_definitions: Optional[List[dict]] = None,
        encrypt_inter_container_traffic: bool = False,
        use_spot_instances: bool = False,
        max_wait: Optional[int] = None,
        checkpoint_s3_uri: Optional[str] = None,
        checkpoint_local_path: Optional[str] = None,
        enable_network_isolation: bool = False,
        enable_sagemaker_metrics: Optional[bool] = None,
        environment: Optional[Dict[str, str]] = None,
    ):
        """
        Args:
            role: 执行角色（名称或 ARN）
            instance_count: 训练实例数量
            instance_type: 训练实例类型
            volume_size: 存储卷大小 (GB)
            volume_kms_key: 存储卷加密 KMS Key
            max_run: 最长运行时间（秒）
            input_mode: File / Pipe / FastFile
            output_path: 模型输出 S3 路径（默认 s3://{默认 Bucket}/）
            output_kms_key: 模型输出加密 KMS Key
            base_job_name: 作业名前缀（默认由镜像名生成）
            sagemaker_session: Session（默认新建）
            tags: Tags
            subnets: VPC 子网（默认使用配置中的 VPC）
            security_group_ids: VPC 安全组
            model_uri: 预训练模型 S3 路径（作为 model 通道输入）
            model_channel_name: 预训练模型通道名
            metric_definitions: 从日志中提取指标的正则定义
            encrypt_inter_container_traffic: 是否加密分布式训练节点间通信
            use_spot_instances: 是否使用 Spot 实例
            max_wait: Spot 训练的最长等待时间（秒），必须不小于 max_run
            checkpoint_s3_uri: Checkpoint S3 路径
            checkpoint_local_path: 容器内 Checkpoint 路径
            enable_network_isolation: 是否启用网络隔离
            enable_sagemaker_metrics: 是否启用指标时间序列
            environment: 训练容器环境变量

        Raises:
            ValueError: use_spot_instances 为 True 但未设置 max_wait
        """
        if use_spot_instances and not max_wait:
            raise ValueError("max_wait must be set when use_spot_instances is True")

        self.role = role
        self.instance_count = instance_count
        self.instance_type = instance_type
        self.volume_size = volume_size
        self.volume_kms_key = volume_kms_key
        self.max_run = max_run
        self.input_mode = input_mode
        self.tags = tags
        self.metric_definitions = metric_definitions
        self.model_uri = model_uri
        self.model_channel_name = model_channel_name
        self.sagemaker_session = sagemaker_session or Session()

        self.base_job_name = base_job_name
        self._current_job_name = None
        self.output_path = output_path
        self.output_kms_key = output_kms_key
        self.latest_training_job = None
        self.deploy_instance_type = None

        if subnets is None and security_group_ids is None:
            subnets, security_group_ids = vpc_utils.from_dict(
                self.sagemaker_session.default_vpc_config()
            )
        self.subnets = subnets
        self.security_group_ids = security_group_ids

        self.encrypt_inter_container_traffic = encrypt_inter_container_traffic
        self.use_spot_instances = use_spot_instances
        self.max_wait = max_wait
        self.checkpoint_s3_uri = checkpoint_s3_uri
        self.checkpoint_local_path = checkpoint_local_path
        self._enable_network_isolation = enable_network_isolation
        self.enable_sagemaker_metrics = enable_sagemaker_metrics
        self.environment = environment

    @abc.abstractmethod
    def training_image_uri(self) -> str:
        """训练镜像 URI"""

    @abc.abstractmethod
    def hyperparameters(self) -> dict:
        """CreateTrainingJob 的 HyperParameters"""

    @abc.abstractmethod
    def create_model(self, **kwargs):
        """由训练结果创建 Model"""

    def enable_network_isolation(self) -> bool:
        return self._enable_network_isolation

    # =========================================================================
    # 训练
    # =========================================================================

    def _ensure_base_job_name(self):
        self.base_job_name = self.base_job_name or base_name_from_image(self.training_image_uri())

    def _get_or_create_name(self, name: Optional[str] = None) -> str:
        if name:
            return name
        self._ensure_base_job_name()
        return name_from_base(self.base_job_name)

    def _prepare_for_training(self, job_name: Optional[str] = None):
        """生成作业名，设置默认输出路径"""
        self._current_job_name = self._get_or_create_name(job_name)

        if self.output_path is None:
            self.output_path = s3_path_join(
                "s3://",
                self.sagemaker_session.default_bucket(),
                self.sagemaker_session.default_bucket_prefix,
            )

    def fit(self, inputs=None, wait: bool = True, job_name: Optional[str] = None, experiment_config: Optional[dict] = None):
        """
        启动训练作业

        Args:
            inputs: 训练数据（S3 URI、TrainingInput、RecordSet 或 {通道名: 输入} 字典）
            wait: 是否等待完成
            job_name: 作业名称（默认由 base_job_name 加时间戳生成）
            experiment_config: Experiment 配置

        Example:
            estimator.fit({"train": "s3://bucket/train/", "validation": "s3://bucket/validation/"})
        """
        self._prepare_for_training(job_name=job_name)
        self.latest_training_job = self._start_new(inputs, experiment_config)
        if wait:
            self.wait()

    def _start_new(self, inputs, experiment_config: Optional[dict]) -> str:
        config = job.load_config(inputs, self)
        hyperparameters = self.hyperparameters() or {}

        self.sagemaker_session.train(
            input_mode=self.input_mode,
            input_config=config["input_config"],
            role=config["role"],
            job_name=self._current_job_name,
            output_config=config["output_config"],
            resource_config=config["resource_config"],
            vpc_config=config["vpc_config"],
            hyperparameters={str(k): str(v) for k, v in hyperparameters.items()},
            stop_condition=config["stop_condition"],
            tags=self.tags,
            metric_definitions=self.metric_definitions,
            enable_network_isolation=self.enable_network_isolation(),
            image_uri=self.training_image_uri(),
            encrypt_inter_container_traffic=self.encrypt_inter_container_traffic,
            use_spot_instances=self.use_spot_instances,
            checkpoint_s3_uri=self.checkpoint_s3_uri,
            checkpoint_local_path=self.checkpoint_local_path,
            experiment_config=experiment_config,
            enable_sagemaker_metrics=self.enable_sagemaker_metrics,
            environment=self.environment,
        )
        return self._current_job_name

    def _ensure_latest_training_job(self, error_message: str = "Estimator is not associated with a training job"):
        if self.latest_training_job is None:
            raise ValueError(error_message)

    def wait(self) -> dict:
        """等待最近一次训练作业结束"""
        self._ensure_latest_training_job()
        return self.sagemaker_session.wait_for_job(self.latest_training_job)

    def stop(self):
        """停止最近一次训练作业"""
        self._ensure_latest_training_job()
        self.sagemaker_session.stop_training_job(self.latest_training_job)

    def describe(self) -> dict:
        """DescribeTrainingJob 响应"""
        self._ensure_latest_training_job()
        return self.sagemaker_session.describe_training_job(self.latest_training_job)

    @property
    def model_data(self) -> str:
        """训练产出的模型文件 S3 路径"""
        if self.latest_training_job is not None:
            return self.sagemaker_session.describe_training_job(self.latest_training_job)[
                "ModelArtifacts"
            ]["S3ModelArtifacts"]

        logger.warning(
            "No finished training job found associated with this estimator. Please make sure "
            "this estimator is only used for building workflow config"
        )
        return s3_path_join(self.output_path, self._current_job_name, "output", "model.tar.gz")

    def get_vpc_config(self, vpc_config_override=vpc_utils.VPC_CONFIG_DEFAULT) -> Optional[dict]:
        """训练作业的 VpcConfig，可以用 vpc_config_override 覆盖"""
        if vpc_config_override is vpc_utils.VPC_CONFIG_DEFAULT:
            return vpc_utils.to_dict(self.subnets, self.security_group_ids)
        return vpc_utils.sanitize(vpc_config_override)

    # =========================================================================
    # 部署
    # =========================================================================

    def deploy(
        self,
        initial_instance_count: Optional[int] = None,
        instance_type: Optional[str] = None,
        serializer=None,
        deserializer=None,
        accelerator_type: Optional[str] = None,
        endpoint_name: Optional[str] = None,
        wait: bool = True,
        model_name: Optional[str] = None,
        kms_key: Optional[str] = None,
        data_capture_config=None,
        tags: Optional[List[dict]] = None,
        serverless_inference_config=None,
        **kwargs,
    ):
        """
        部署训练好的模型到 Endpoint

        Returns:
            Predictor

        Raises:
            ValueError: 没有关联的训练作业
        """
        self._ensure_latest_training_job()
        self._ensure_base_job_name()
        default_name = name_from_base(self.base_job_name)
        endpoint_name = endpoint_name or default_name
        model_name = model_name or default_name

        self.deploy_instance_type = instance_type
        model = self.create_model(**kwargs)
        model.name = model_name

        return model.deploy(
            instance_type=instance_type,
            initial_instance_count=initial_instance_count,
            serializer=serializer,
            deserializer=deserializer,
            accelerator_type=accelerator_type,
            endpoint_name=endpoint_name,
            tags=tags or self.tags,
            wait=wait,
            kms_key=kms_key,
            data_capture_config=data_capture_config,
            serverless_inference_config=serverless_inference_config,
        )

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
        role: Optional[str] = None,
        volume_kms_key: Optional[str] = None,
        model_name: Optional[str] = None,
    ):
        """
        由训练结果创建模型并返回 Transformer

        Raises:
            ValueError: 没有关联的训练作业
        """
        self._ensure_latest_training_job()
        tags = tags or self.tags
        model_name = self._get_or_create_name(model_name)

        model = self.create_model(role=role) if role else self.create_model()
        model.name = model_name

        transformer = model.transformer(
            instance_count,
            instance_type,
            strategy=strategy,
            assemble_with=assemble_with,
            output_path=output_path,
            output_kms_key=output_kms_key,
            accept=accept,
            env=env,
            max_concurrent_transforms=max_concurrent_transforms,
            max_payload=max_payload,
            tags=tags,
            volume_kms_key=volume_kms_key,
        )
        transformer.base_transform_job_name = self.base_job_name
        return transformer

    # =========================================================================
    # 关联已有作业
    # =========================================================================

    @classmethod
    def attach(cls, training_job_name: str, sagemaker_session: Session = None, model_channel_name: str = "model"):
        """
        关联已有的训练作业并等待其结束

        Example:
            estimator = Estimator.attach("xgboost-2024-01-01-00-00-00-000")
            predictor = estimator.deploy(initial_instance_count=1, instance_type="ml.m5.large")
        """
        sagemaker_session = sagemaker_session or Session()

        job_details = sagemaker_session.describe_training_job(training_job_name)
        init_params = cls._prepare_init_params_from_job_description(job_details, model_channel_name)

        estimator = cls(sagemaker_session=sagemaker_session, **init_params)
        estimator.latest_training_job = training_job_name
        estimator._current_job_name = training_job_name
        estimator.wait()
        return estimator

    @classmethod
    def _prepare_init_params_from_job_description(cls, job_details: dict, model_channel_name: Optional[str] = None) -> dict:
        """DescribeTrainingJob 响应转换成构造参数"""
        algorithm_spec = job_details["AlgorithmSpecification"]
        resource_config = job_details["ResourceConfig"]
        stopping_condition = job_details["StoppingCondition"]
        output_config = job_details["OutputDataConfig"]

        init_params = {
            "role": job_details["RoleArn"],
            "instance_count": resource_config["InstanceCount"],
            "instance_type": resource_config["InstanceType"],
            "volume_size": resource_config["VolumeSizeInGB"],
            "max_run": stopping_condition["MaxRuntimeInSeconds"],
            "input_mode": algorithm_spec["TrainingInputMode"],
            "base_job_name": base_from_name(job_details["TrainingJobName"]),
            "output_path": output_config["S3OutputPath"],
            "output_kms_key": output_config.get("KmsKeyId"),
            "hyperparameters": job_details.get("HyperParameters", {}),
        }

        if "VolumeKmsKeyId" in resource_config:
            init_params["volume_kms_key"] = resource_config["VolumeKmsKeyId"]
        if "TrainingImage" in algorithm_spec:
            init_params["image_uri"] = algorithm_spec["TrainingImage"]
        if "MetricDefinitions" in algorithm_spec:
            init_params["metric_definitions"] = algorithm_spec["MetricDefinitions"]
        if job_details.get("EnableNetworkIsolation"):
            init_params["enable_network_isolation"] = True
        if job_details.get("EnableInterContainerTrafficEncryption"):
            init_params["encrypt_inter_container_traffic"] = True
        if job_details.get("EnableManagedSpotTraining"):
            init_params["use_spot_instances"] = True
            init_params["max_wait"] = stopping_condition.get("MaxWaitTimeInSeconds")
        if "CheckpointConfig" in job_details:
            init_params["checkpoint_s3_uri"] = job_details["CheckpointConfig"]["S3Uri"]
            init_params["checkpoint_local_path"] = job_details["CheckpointConfig"].get("LocalPath")
        if job_details.get("Environment"):
            init_params["environment"] = job_details["Environment"]

        subnets, security_group_ids = vpc_utils.from_dict(job_details.get(vpc_utils.VPC_CONFIG_KEY))
        if subnets:
            init_params["subnets"] = subnets
        if security_group_ids:
            init_params["security_group_ids"] = security_group_ids

        if model_channel_name:
            for channel in job_details.get("InputDataConfig", []):
                if channel["ChannelName"] == model_channel_name:
                    init_params["model_channel_name"] = model_channel_name
                    init_params["model_uri"] = channel["DataSource"]["S3DataSource"]["S3Uri"]
                    break

        return init_params


class Estimator(EstimatorBase):
    """
    通用 Estimator（任意训练镜像）

    Example:
        estimator = Estimator(
            image_uri=image_uris.retrieve("xgboost", "us-west-2", "1.7-1"),
            role="arn:aws:iam::111122223333:role/SageMakerRole",
            instance_count=1,
            instance_type="ml.m5.xlarge",
            hyperparameters={"num_round": 100},
        )
        estimator.fit({"train": "s3://bucket/train/"})
    """

    def __init__(
        self,
        image_uri: str,
        role: str,
        instance_count: Optional[int] = None,
        instance_type: Optional[str] = None,
        hyperparameters: Optional[dict] = None,
        **kwargs,
    ):
        """
        Args:
            image_uri: 训练镜像 URI
            hyperparameters: 超参数（值会转换成字符串）
            **kwargs: EstimatorBase 的其余参数
        """
        self.image_uri = image_uri
        self._hyperparameters = hyperparameters.copy() if hyperparameters else {}
        super().__init__(role, instance_count, instance_type, **kwargs)

    def training_image_uri(self) -> str:
        return self.image_uri

    def set_hyperparameters(self, **kwargs):
        for k, v in kwargs.items():
            self._hyperparameters[k] = v

    def hyperparameters(self) -> dict:
        return self._hyperparameters

    def create_model(
        self,
        role: Optional[str] = None,
        image_uri: Optional[str] = None,
        predictor_cls=None,
        vpc_config_override=vpc_utils.VPC_CONFIG_DEFAULT,
        **kwargs,
    ) -> Model:
        """
        由训练结果创建 Model

        Args:
            role: 执行角色（默认沿用训练角色）
            image_uri: 推理镜像（默认沿用训练镜像）
            predictor_cls: deploy() 返回的 Predictor 类（默认 Predictor）
            vpc_config_override: 覆盖训练作业的 VpcConfig
        """
        return Model(
            image_uri or self.training_image_uri(),
            self.model_data,
            role or self.role,
            predictor_cls=predictor_cls or Predictor,
            vpc_config=self.get_vpc_config(vpc_config_override),
            sagemaker_session=self.sagemaker_session,
            enable_network_isolation=self.enable_network_isolation(),
            **kwargs,
        )


class Framework(EstimatorBase):
    """
    框架 Estimator 基类

    训练时把 entry_point / source_dir 打包上传到 S3，超参数统一 JSON 编码
    """

    _framework_name: Optional[str] = None

    def __init__(
        self,
        entry_point: str,
        source_dir: Optional[str] = None,
        hyperparameters: Optional[dict] = None,
        container_log_level: int = logging.INFO,
        code_location: Optional[str] = None,
        image_uri: Optional[str] = None,
        dependencies: Optional[List[str]] = None,
        framework_version: Optional[str] = None,
        py_version: Optional[str] = None,
        **kwargs,
    ):
        """
        Args:
            entry_point: 训练脚本（相对 source_dir 或本地路径）
            source_dir: 源码目录（本地或 s3://.../sourcedir.tar.gz）
            hyperparameters: 超参数（JSON 编码后传给脚本）
            container_log_level: 容器日志级别
            code_location: 源码上传位置（默认 s3://{默认 Bucket}/{作业名}/source）
            image_uri: 训练镜像（指定时忽略 framework_version / py_version）
            dependencies: 额外打包的本地目录
            framework_version: 框架版本
            py_version: Python 版本

        Raises:
            ValueError: 既未指定 image_uri，也未同时指定 framework_version 和 py_version
        """
        validate_version_or_image_args(framework_version, py_version, image_uri)
        super().__init__(**kwargs)

        self.entry_point = entry_point
        self.source_dir = source_dir
        self.dependencies = dependencies or []
        self.uploaded_code = None
        self.container_log_level = container_log_level
        self.code_location = code_location
        self.image_uri = image_uri
        self.framework_version = framework_version
        self.py_version = py_version
        self._hyperparameters = hyperparameters.copy() if hyperparameters else {}

    def _prepare_for_training(self, job_name: Optional[str] = None):
        super()._prepare_for_training(job_name=job_name)

        if self.source_dir and not self.source_dir.lower().startswith("s3://"):
            validate_source_dir(self.entry_point, self.source_dir)

        self.uploaded_code = self._stage_user_code_in_s3()

        self._hyperparameters[DIR_PARAM_NAME] = self.uploaded_code.s3_prefix
        self._hyperparameters[SCRIPT_PARAM_NAME] = self.uploaded_code.script_name
        self._hyperparameters[CONTAINER_LOG_LEVEL_PARAM_NAME] = self.container_log_level
        self._hyperparameters[JOB_NAME_PARAM_NAME] = self._current_job_name
        self._hyperparameters[SAGEMAKER_REGION_PARAM_NAME] = self.sagemaker_session.boto_region_name

    def _stage_user_code_in_s3(self):
        if self.code_location is None:
            code_bucket = self.sagemaker_session.default_bucket()
            key_prefix = s3_path_join(
                self.sagemaker_session.default_bucket_prefix, self._current_job_name, "source"
            )
        else:
            code_bucket, key_prefix = parse_s3_url(self.code_location)
            key_prefix = s3_path_join(key_prefix, self._current_job_name, "source")

        return tar_and_upload_dir(
            session=self.sagemaker_session,
            bucket=code_bucket,
            s3_key_prefix=key_prefix,
            script=self.entry_point,
            directory=self.source_dir,
            dependencies=self.dependencies,
            kms_key=self.output_kms_key,
        )

    def set_hyperparameters(self, **kwargs):
        for k, v in kwargs.items():
            self._hyperparameters[k] = v

    def hyperparameters(self) -> dict:
        """全部超参数 JSON 编码"""
        return {str(k): json.dumps(v) for k, v in self._hyperparameters.items()}

    def training_image_uri(self) -> str:
        if self.image_uri:
            return self.image_uri
        return image_uris.retrieve(
            self._framework_name,
            self.sagemaker_session.boto_region_name,
            version=self.framework_version,
            py_version=self.py_version,
            instance_type=self.instance_type,
            image_scope="training",
        )

    def _model_source_dir(self) -> Optional[str]:
        return self.uploaded_code.s3_prefix if self.uploaded_code else self.source_dir

    def _model_entry_point(self) -> Optional[str]:
        return self.uploaded_code.script_name if self.uploaded_code else self.entry_point

    @classmethod
    def _prepare_init_params_from_job_description(cls, job_details: dict, model_channel_name: Optional[str] = None) -> dict:
        init_params = super()._prepare_init_params_from_job_description(job_details, model_channel_name)

        hyperparameters = {}
        for k, v in init_params["hyperparameters"].items():
            try:
                hyperparameters[k] = json.loads(v)
            except ValueError:
                hyperparameters[k] = v

        init_params["entry_point"] = hyperparameters.pop(SCRIPT_PARAM_NAME, None)
        init_params["source_dir"] = hyperparameters.pop(DIR_PARAM_NAME, None)
        init_params["container_log_level"] = hyperparameters.pop(
            CONTAINER_LOG_LEVEL_PARAM_NAME, logging.INFO
        )
        hyperparameters.pop(JOB_NAME_PARAM_NAME, None)
        hyperparameters.pop(SAGEMAKER_REGION_PARAM_NAME, None)
        init_params["hyperparameters"] = hyperparameters

        image_uri = init_params.pop("image_uri")
        framework, py_version, tag = framework_name_from_image(image_uri)

        if not framework:
            # 自定义镜像
            init_params["image_uri"] = image_uri
            return init_params

        if framework != cls._framework_name:
            raise ValueError(
                f"Training job: {job_details['TrainingJobName']} didn't use image for requested framework"
            )

        init_params["framework_version"] = framework_version_from_tag(tag)
        init_params["py_version"] = py_version
        if init_params["framework_version"] is None:
            # 旧版镜像 Tag（如 xgboost:1）无法解析出版本
            init_params["image_uri"] = image_uri
        return init_params
