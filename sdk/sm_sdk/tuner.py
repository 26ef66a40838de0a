# =============================================================================
# tuner.py - 超参数调优 (Hyperparameter Tuning Job)
# =============================================================================
# HyperparameterTuner 以一个 Estimator 为模板：
#   - 固定超参数 -> StaticHyperParameters
#   - 调优范围   -> ParameterRanges
#   - 训练配置   -> TrainingJobDefinition
# 调优结束后可以取出最优训练作业并部署
# =============================================================================

import copy
import importlib
import inspect
import json
import logging
from enum import Enum
from typing import Dict, List, Optional

from . import job
from .amazon_estimator import AmazonAlgorithmEstimatorBase
from .estimator import Estimator, Framework
from .fw_utils import framework_name_from_image
from .hyperparameter import Hyperparameter
from .parameter import CategoricalParameter, ContinuousParameter, IntegerParameter, ParameterRange
from .session import Session
from .utils import base_from_name, base_name_from_image, name_from_base, to_string

logger = logging.getLogger(__name__)

SAGEMAKER_ESTIMATOR_MODULE = "sagemaker_estimator_module"
SAGEMAKER_ESTIMATOR_CLASS_NAME = "sagemaker_estimator_class_name"

# 调优作业名最长 32 个字符
TUNING_JOB_NAME_MAX_LENGTH = 32

# 镜像 -> Estimator 类（attach 时没有类元数据的情况）
FRAMEWORK_ESTIMATORS = {
    "xgboost": ("xgboost", "XGBoost"),
    "sklearn": ("sklearn", "SKLearn"),
    "pytorch": ("pytorch", "PyTorch"),
}
AMAZON_ESTIMATORS = {
    "kmeans": ("kmeans", "KMeans"),
}


class WarmStartTypes(Enum):
    IDENTICAL_DATA_AND_ALGORITHM = "IdenticalDataAndAlgorithm"
    TRANSFER_LEARNING = "TransferLearning"


class WarmStartConfig:
    """
    基于父调优作业热启动

    Example:
        WarmStartConfig(
            WarmStartTypes.TRANSFER_LEARNING,
            parents={"kmeans-240101-0000", "kmeans-240102-0000"},
        )
    """

    def __init__(self, warm_start_type, parents):
        """
        Args:
            warm_start_type: WarmStartTypes 或其字符串值
            parents: 父调优作业名称集合

        Raises:
            ValueError: 类型不支持或 parents 为空
        """
        try:
            self.type = WarmStartTypes(warm_start_type)
        except ValueError:
            raise ValueError(
                f"Invalid type: {warm_start_type}, valid warm start types are: "
                f"{[t.value for t in WarmStartTypes]}"
            )

        if not parents:
            raise ValueError(f"Invalid parents: {parents}, parents should not be None/empty")

        self.parents = set(parents)

    @classmethod
    def from_job_desc(cls, warm_start_config: Optional[dict]) -> Optional["WarmStartConfig"]:
        if not warm_start_config:
            return None
        if "WarmStartType" not in warm_start_config or "ParentHyperParameterTuningJobs" not in warm_start_config:
            return None

        parents = [
            parent["HyperParameterTuningJobName"]
            for parent in warm_start_config["ParentHyperParameterTuningJobs"]
        ]
        return cls(warm_start_config["WarmStartType"], parents)

    def to_input_req(self) -> dict:
        return {
            "WarmStartType": self.type.value,
            "ParentHyperParameterTuningJobs": [
                {"HyperParameterTuningJobName": parent} for parent in sorted(self.parents)
            ],
        }


class HyperparameterTuner:
    """
    超参数调优

    Example:
        tuner = HyperparameterTuner(
            estimator=kmeans,
            objective_metric_name="test:msd",
            objective_type="Minimize",
            hyperparameter_ranges={
                "extra_center_factor": IntegerParameter(4, 10),
                "init_method": CategoricalParameter(["kmeans++", "random"]),
            },
            max_jobs=10,
            max_parallel_jobs=2,
        )
        tuner.fit([train_records, test_records], wait=True)
        predictor = tuner.deploy(initial_instance_count=1, instance_type="ml.m5.large")
    """

    def __init__(
        self,
        estimator,
        objective_metric_name: str,
        hyperparameter_ranges: Dict[str, ParameterRange],
        metric_definitions: Optional[List[dict]] = None,
        strategy: str = "Bayesian",
        objective_type: str = "Maximize",
        max_jobs: int = 1,
        max_parallel_jobs: int = 1,
        tags: Optional[List[dict]] = None,
        base_tuning_job_name: Optional[str] = None,
        warm_start_config: Optional[WarmStartConfig] = None,
        early_stopping_type: str = "Off",
    ):
        """
        Args:
            estimator: 训练模板
            objective_metric_name: 目标指标名
            hyperparameter_ranges: {超参数名: 取值范围}
            metric_definitions: 指标提取正则（默认沿用 estimator 的定义）
            strategy: Bayesian / Random / Hyperband / Grid
            objective_type: Maximize / Minimize
            max_jobs: 训练作业总数上限
            max_parallel_jobs: 并行训练作业上限
            tags: Tags
            base_tuning_job_name: 作业名前缀（默认由训练镜像名生成）
            warm_start_config: 热启动配置
            early_stopping_type: Off / Auto

        Raises:
            ValueError: 调优范围为空，或范围超出超参数的校验规则
        """
        if not hyperparameter_ranges:
            raise ValueError("Need to specify hyperparameter ranges")

        self.estimator = estimator
        self.objective_metric_name = objective_metric_name
        self._hyperparameter_ranges = hyperparameter_ranges
        self._validate_parameter_ranges(estimator)

        self.metric_definitions = metric_definitions
        self.strategy = strategy
        self.objective_type = objective_type
        self.max_jobs = max_jobs
        self.max_parallel_jobs = max_parallel_jobs
        self.tags = tags
        self.base_tuning_job_name = base_tuning_job_name
        self.warm_start_config = warm_start_config
        self.early_stopping_type = early_stopping_type

        self._current_job_name = None
        self.latest_tuning_job = None

    @property
    def sagemaker_session(self) -> Session:
        return self.estimator.sagemaker_session

    # =========================================================================
    # 调优范围
    # =========================================================================

    def _validate_parameter_ranges(self, estimator):
        """用 estimator 上声明的 Hyperparameter 校验范围的上下限和离散取值"""
        for kls in inspect.getmro(estimator.__class__)[::-1]:
            for value in kls.__dict__.values():
                if not isinstance(value, Hyperparameter):
                    continue
                parameter_range = self._hyperparameter_ranges.get(value.name)
                if isinstance(parameter_range, ParameterRange):
                    self._validate_parameter_range(value, parameter_range)

    @staticmethod
    def _validate_parameter_range(value_hp: Hyperparameter, parameter_range: ParameterRange):
        if isinstance(parameter_range, CategoricalParameter):
            candidates = parameter_range.values
        else:
            candidates = [parameter_range.min_value, parameter_range.max_value]

        for candidate in candidates:
            value_hp.validate(value_hp.data_type(candidate))

    def hyperparameter_ranges(self) -> dict:
        """ParameterRanges 请求结构；框架 Estimator 的离散取值使用 JSON 编码"""
        hyperparameter_ranges = {}
        for range_type in ParameterRange.all_types:
            parameter_ranges = []
            for parameter_name, parameter in self._hyperparameter_ranges.items():
                if parameter is None or parameter.range_type != range_type:
                    continue
                if isinstance(parameter, CategoricalParameter) and isinstance(self.estimator, Framework):
                    tuning_range = parameter.as_json_range(parameter_name)
                else:
                    tuning_range = parameter.as_tuning_range(parameter_name)
                parameter_ranges.append(tuning_range)
            hyperparameter_ranges[range_type + "ParameterRanges"] = parameter_ranges
        return hyperparameter_ranges

    # =========================================================================
    # 启动调优
    # =========================================================================

    def fit(self, inputs=None, job_name: Optional[str] = None, include_cls_metadata: bool = False, wait: bool = False, **kwargs):
        """
        启动调优作业

        Args:
            inputs: 训练数据，格式与 estimator.fit() 相同
            job_name: 作业名称（默认自动生成，最长 32 字符）
            include_cls_metadata: 是否在固定超参数中记录 Estimator 类（框架 Estimator 总是记录）
            wait: 是否等待完成
            **kwargs: 传给内置算法的 _prepare_for_training（例如 mini_batch_size）
        """
        self._prepare_for_tuning(job_name=job_name)
        self._prepare_estimator_for_tuning(inputs, **kwargs)

        self.latest_tuning_job = self._start_new(inputs, include_cls_metadata)
        if wait:
            self.wait()

    def _prepare_for_tuning(self, job_name: Optional[str] = None):
        if job_name is not None:
            self._current_job_name = job_name
            return

        base_name = self.base_tuning_job_name or base_name_from_image(
            self.estimator.training_image_uri()
        )
        self._current_job_name = name_from_base(
            base_name, max_length=TUNING_JOB_NAME_MAX_LENGTH, short=True
        )

    def _prepare_estimator_for_tuning(self, inputs, **kwargs):
        if isinstance(self.estimator, AmazonAlgorithmEstimatorBase):
            self.estimator._prepare_for_training(inputs, **kwargs)
        else:
            self.estimator._prepare_for_training(self._current_job_name)

    def _prepare_static_hyperparameters(self, include_cls_metadata: bool) -> dict:
        estimator = self.estimator
        hyperparameters = {
            str(k): to_string(v) for k, v in (estimator.hyperparameters() or {}).items()
        }
        for hyperparameter_name in self._hyperparameter_ranges:
            hyperparameters.pop(hyperparameter_name, None)

        if include_cls_metadata or isinstance(estimator, Framework):
            hyperparameters[SAGEMAKER_ESTIMATOR_CLASS_NAME] = json.dumps(estimator.__class__.__name__)
            hyperparameters[SAGEMAKER_ESTIMATOR_MODULE] = json.dumps(estimator.__module__)

        return hyperparameters

    def _tuning_config(self) -> dict:
        return {
            "Strategy": self.strategy,
            "ResourceLimits": {
                "MaxNumberOfTrainingJobs": self.max_jobs,
                "MaxParallelTrainingJobs": self.max_parallel_jobs,
            },
            "TrainingJobEarlyStoppingType": self.early_stopping_type,
            "HyperParameterTuningJobObjective": {
                "Type": self.objective_type,
                "MetricName": self.objective_metric_name,
            },
            "ParameterRanges": self.hyperparameter_ranges(),
        }

    def _training_config(self, inputs, include_cls_metadata: bool) -> dict:
        estimator = self.estimator
        config = job.load_config(inputs, estimator)

        algorithm_spec = {
            "TrainingImage": estimator.training_image_uri(),
            "TrainingInputMode": estimator.input_mode,
        }
        metric_definitions = self.metric_definitions or estimator.metric_definitions
        if metric_definitions:
            algorithm_spec["MetricDefinitions"] = metric_definitions

        training_config = {
            "StaticHyperParameters": self._prepare_static_hyperparameters(include_cls_metadata),
            "AlgorithmSpecification": algorithm_spec,
            "RoleArn": config["role"],
            "OutputDataConfig": config["output_config"],
            "ResourceConfig": config["resource_config"],
            "StoppingCondition": config["stop_condition"],
        }

        if config["input_config"] is not None:
            training_config["InputDataConfig"] = config["input_config"]
        if config["vpc_config"] is not None:
            training_config["VpcConfig"] = config["vpc_config"]
        if estimator.enable_network_isolation():
            training_config["EnableNetworkIsolation"] = True
        if estimator.encrypt_inter_container_traffic:
            training_config["EnableInterContainerTrafficEncryption"] = True
        if estimator.use_spot_instances:
            training_config["EnableManagedSpotTraining"] = True
        if estimator.checkpoint_s3_uri:
            checkpoint_config = {"S3Uri": estimator.checkpoint_s3_uri}
            if estimator.checkpoint_local_path:
                checkpoint_config["LocalPath"] = estimator.checkpoint_local_path
            training_config["CheckpointConfig"] = checkpoint_config
        if estimator.environment:
            training_config["Environment"] = estimator.environment

        return training_config

    def _start_new(self, inputs, include_cls_metadata: bool) -> str:
        warm_start_config = (
            self.warm_start_config.to_input_req() if self.warm_start_config else None
        )
        self.sagemaker_session.create_tuning_job(
            job_name=self._current_job_name,
            tuning_config=self._tuning_config(),
            training_config=self._training_config(inputs, include_cls_metadata),
            warm_start_config=warm_start_config,
            tags=self.tags,
        )
        return self._current_job_name

    # =========================================================================
    # 作业控制
    # =========================================================================

    def _ensure_last_tuning_job(self):
        if self.latest_tuning_job is None:
            raise ValueError("No tuning job available")

    def wait(self) -> dict:
        """等待调优作业结束"""
        self._ensure_last_tuning_job()
        return self.sagemaker_session.wait_for_tuning_job(self.latest_tuning_job)

    def stop_tuning_job(self):
        self._ensure_last_tuning_job()
        self.sagemaker_session.stop_tuning_job(name=self.latest_tuning_job)

    def describe(self) -> dict:
        self._ensure_last_tuning_job()
        return self.sagemaker_session.describe_tuning_job(self.latest_tuning_job)

    # =========================================================================
    # 最优训练作业
    # =========================================================================

    def _get_best_training_job(self) -> dict:
        """
        Raises:
            ValueError: 调优作业还没有最优训练作业
        """
        self._ensure_last_tuning_job()
        tuning_job_describe_result = self.describe()
        try:
            return tuning_job_describe_result["BestTrainingJob"]
        except KeyError:
            raise ValueError(
                f"Best training job not available for tuning job: {self.latest_tuning_job}"
            )

    def best_training_job(self) -> str:
        """最优训练作业名称"""
        return self._get_best_training_job()["TrainingJobName"]

    def best_estimator(self, best_training_job: Optional[dict] = None):
        """关联最优训练作业的 Estimator"""
        if best_training_job is None:
            best_training_job = self._get_best_training_job()
        return self.estimator.__class__.attach(
            best_training_job["TrainingJobName"],
            sagemaker_session=self.sagemaker_session,
        )

    def deploy(
        self,
        initial_instance_count: int,
        instance_type: str,
        serializer=None,
        deserializer=None,
        accelerator_type: Optional[str] = None,
        endpoint_name: Optional[str] = None,
        wait: bool = True,
        model_name: Optional[str] = None,
        kms_key: Optional[str] = None,
        data_capture_config=None,
        **kwargs,
    ):
        """
        部署最优训练作业的模型，Endpoint 默认与训练作业同名

        Returns:
            Predictor
        """
        best_training_job = self._get_best_training_job()
        best_estimator = self.best_estimator(best_training_job)

        return best_estimator.deploy(
            initial_instance_count=initial_instance_count,
            instance_type=instance_type,
            serializer=serializer,
            deserializer=deserializer,
            accelerator_type=accelerator_type,
            endpoint_name=endpoint_name or best_training_job["TrainingJobName"],
            wait=wait,
            model_name=model_name,
            kms_key=kms_key,
            data_capture_config=data_capture_config,
            **kwargs,
        )

    # =========================================================================
    # 关联已有调优作业
    # =========================================================================

    @classmethod
    def attach(cls, tuning_job_name: str, sagemaker_session: Session = None, estimator_cls=None) -> "HyperparameterTuner":
        """
        关联已有的调优作业

        Args:
            tuning_job_name: 调优作业名称
            sagemaker_session: Session（默认新建）
            estimator_cls: Estimator 类（默认根据类元数据或训练镜像推断）

        Example:
            tuner = HyperparameterTuner.attach("kmeans-240101-0000")
            print(tuner.best_training_job())
        """
        sagemaker_session = sagemaker_session or Session()
        job_details = sagemaker_session.describe_tuning_job(tuning_job_name)

        estimator = cls._prepare_estimator_from_job_description(
            estimator_cls, copy.deepcopy(job_details["TrainingJobDefinition"]), sagemaker_session
        )
        init_params = cls._prepare_init_params_from_job_description(job_details)

        tuner = cls(estimator=estimator, **init_params)
        tuner.latest_tuning_job = tuning_job_name
        return tuner

    @classmethod
    def _prepare_estimator_from_job_description(cls, estimator_cls, training_details: dict, sagemaker_session: Session):
        estimator_cls = cls._prepare_estimator_cls(estimator_cls, training_details)

        # 转换成 DescribeTrainingJob 的结构
        hyperparameters = training_details.pop("StaticHyperParameters", {})
        hyperparameters.pop(SAGEMAKER_ESTIMATOR_MODULE, None)
        hyperparameters.pop(SAGEMAKER_ESTIMATOR_CLASS_NAME, None)
        training_details["HyperParameters"] = hyperparameters
        training_details["TrainingJobName"] = ""
        training_details["OutputDataConfig"].setdefault("KmsKeyId", "")

        estimator_init_params = estimator_cls._prepare_init_params_from_job_description(training_details)
        return estimator_cls(sagemaker_session=sagemaker_session, **estimator_init_params)

    @staticmethod
    def _prepare_estimator_cls(estimator_cls, training_details: dict):
        if estimator_cls is not None:
            return estimator_cls

        hyperparameters = training_details.get("StaticHyperParameters", {})
        module = hyperparameters.get(SAGEMAKER_ESTIMATOR_MODULE)
        cls_name = hyperparameters.get(SAGEMAKER_ESTIMATOR_CLASS_NAME)
        if module and cls_name:
            return getattr(importlib.import_module(json.loads(module)), json.loads(cls_name))

        image_uri = training_details["AlgorithmSpecification"].get("TrainingImage", "")
        framework, _, _ = framework_name_from_image(image_uri)
        known = FRAMEWORK_ESTIMATORS.get(framework) or AMAZON_ESTIMATORS.get(
            base_name_from_image(image_uri)
        )
        if known:
            module_name, cls_name = known
            return getattr(importlib.import_module(f".{module_name}", __package__), cls_name)

        return Estimator

    @classmethod
    def _prepare_init_params_from_job_description(cls, job_details: dict) -> dict:
        tuning_config = job_details["HyperParameterTuningJobConfig"]
        algorithm_spec = job_details["TrainingJobDefinition"]["AlgorithmSpecification"]

        return {
            "metric_definitions": algorithm_spec.get("MetricDefinitions"),
            "objective_metric_name": tuning_config["HyperParameterTuningJobObjective"]["MetricName"],
            "objective_type": tuning_config["HyperParameterTuningJobObjective"]["Type"],
            "hyperparameter_ranges": cls._prepare_parameter_ranges_from_job_description(
                tuning_config["ParameterRanges"]
            ),
            "strategy": tuning_config["Strategy"],
            "max_jobs": tuning_config["ResourceLimits"]["MaxNumberOfTrainingJobs"],
            "max_parallel_jobs": tuning_config["ResourceLimits"]["MaxParallelTrainingJobs"],
            "warm_start_config": WarmStartConfig.from_job_desc(job_details.get("WarmStartConfig")),
            "early_stopping_type": tuning_config.get("TrainingJobEarlyStoppingType", "Off"),
            "base_tuning_job_name": base_from_name(job_details["HyperParameterTuningJobName"]),
        }

    @staticmethod
    def _prepare_parameter_ranges_from_job_description(parameter_ranges: dict) -> dict:
        ranges = {}

        for parameter in parameter_ranges.get("CategoricalParameterRanges", []):
            ranges[parameter["Name"]] = CategoricalParameter(parameter["Values"])

        for parameter in parameter_ranges.get("ContinuousParameterRanges", []):
            ranges[parameter["Name"]] = ContinuousParameter(
                float(parameter["MinValue"]),
                float(parameter["MaxValue"]),
                parameter.get("ScalingType", "Auto"),
            )

        for parameter in parameter_ranges.get("IntegerParameterRanges", []):
            ranges[parameter["Name"]] = IntegerParameter(
                int(parameter["MinValue"]),
                int(parameter["MaxValue"]),
                parameter.get("ScalingType", "Auto"),
            )

        return ranges
