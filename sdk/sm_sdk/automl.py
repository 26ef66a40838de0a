# =============================================================================
# automl.py - AutoML (Autopilot) 作业
# =============================================================================
# AutoML 根据表格数据自动完成特征处理、算法选择和调优，产出的
# 候选模型 (Candidate) 是一组推理容器，部署时组合成 PipelineModel
# =============================================================================

import logging
from typing import List, Optional, Union

from . import job
from .inputs import TrainingInput
from .model import Model
from .pipeline import PipelineModel
from .s3 import s3_path_join
from .session import Session
from .utils import name_from_base

logger = logging.getLogger(__name__)

# CreateAutoMLJob 限制作业名最长 32 个字符
AUTO_ML_JOB_NAME_MAX_LENGTH = 32

INFERENCE_SUPPORTED_ENV = "SAGEMAKER_INFERENCE_SUPPORTED"
INFERENCE_OUTPUT_ENV = "SAGEMAKER_INFERENCE_OUTPUT"
INFERENCE_INPUT_ENV = "SAGEMAKER_INFERENCE_INPUT"


class AutoMLInput:
    """
    AutoML 输入数据

    Example:
        AutoMLInput(
            inputs=["s3://bucket/train.csv"],
            target_attribute_name="label",
            channel_type="training",
        )
    """

    def __init__(
        self,
        inputs: Union[str, List[str]],
        target_attribute_name: str,
        compression: Optional[str] = None,
        channel_type: Optional[str] = None,
        content_type: Optional[str] = None,
        s3_data_type: Optional[str] = None,
    ):
        """
        Args:
            inputs: 一个或多个 S3 URI
            target_attribute_name: 目标列
            compression: 压缩格式 (Gzip)
            channel_type: training / validation
            content_type: 数据格式，例如 text/csv;header=present
            s3_data_type: S3Prefix / ManifestFile
        """
        self.inputs = inputs
        self.target_attribute_name = target_attribute_name
        self.compression = compression
        self.channel_type = channel_type
        self.content_type = content_type
        self.s3_data_type = s3_data_type

    def to_request_list(self) -> List[dict]:
        """InputDataConfig 通道列表（每个 URI 一个）"""
        inputs = [self.inputs] if isinstance(self.inputs, str) else self.inputs

        auto_ml_input = []
        for entry in inputs:
            input_entry = {
                "DataSource": {
                    "S3DataSource": {"S3DataType": self.s3_data_type or "S3Prefix", "S3Uri": entry}
                },
                "TargetAttributeName": self.target_attribute_name,
            }
            if self.compression is not None:
                input_entry["CompressionType"] = self.compression
            if self.channel_type is not None:
                input_entry["ChannelType"] = self.channel_type
            if self.content_type is not None:
                input_entry["ContentType"] = self.content_type
            auto_ml_input.append(input_entry)
        return auto_ml_input


class AutoML:
    """
    AutoML 作业

    Example:
        automl = AutoML(
            role="arn:aws:iam::111122223333:role/SageMakerRole",
            target_attribute_name="label",
            max_candidates=10,
        )
        automl.fit("s3://bucket/train.csv", wait=True)
        predictor = automl.deploy(
            initial_instance_count=1,
            instance_type="ml.m5.large",
            inference_response_keys=["predicted_label", "probability"],
        )
    """

    def __init__(
        self,
        role: str,
        target_attribute_name: str,
        output_kms_key: Optional[str] = None,
        output_path: Optional[str] = None,
        base_job_name: Optional[str] = None,
        compression_type: Optional[str] = None,
        sagemaker_session: Session = None,
        volume_kms_key: Optional[str] = None,
        encrypt_inter_container_traffic: bool = False,
        vpc_config: Optional[dict] = None,
        problem_type: Optional[str] = None,
        max_candidates: Optional[int] = None,
        max_runtime_per_training_job_in_seconds: Optional[int] = None,
        total_job_runtime_in_seconds: Optional[int] = None,
        job_objective: Optional[dict] = None,
        generate_candidate_definitions_only: bool = False,
        tags: Optional[List[dict]] = None,
        content_type: Optional[str] = None,
        s3_data_type: Optional[str] = None,
        feature_specification_s3_uri: Optional[str] = None,
        validation_fraction: Optional[float] = None,
        mode: Optional[str] = None,
        auto_generate_endpoint_name: Optional[bool] = None,
        endpoint_name: Optional[str] = None,
    ):
        """
        Args:
            role: 执行角色
            target_attribute_name: 目标列
            output_kms_key: 输出加密 KMS Key
            output_path: 输出 S3 路径（默认 s3://{默认 Bucket}/）
            base_job_name: 作业名前缀（默认 automl）
            compression_type: 输入压缩格式
            sagemaker_session: Session（默认新建）
            volume_kms_key: 存储卷加密 KMS Key
            encrypt_inter_container_traffic: 是否加密节点间通信
            vpc_config: VpcConfig
            problem_type: Regression / BinaryClassification / MultiClassClassification
            max_candidates: 候选模型数量上限
            max_runtime_per_training_job_in_seconds: 单个训练作业时长上限
            total_job_runtime_in_seconds: 整个 AutoML 作业时长上限
            job_objective: 目标指标，例如 {"MetricName": "F1"}
            generate_candidate_definitions_only: 只生成候选定义，不训练
            tags: Tags
            content_type: 输入数据格式
            s3_data_type: S3Prefix / ManifestFile
            feature_specification_s3_uri: 特征选择文件
            validation_fraction: 验证集比例
            mode: AUTO / ENSEMBLING / HYPERPARAMETER_TUNING
            auto_generate_endpoint_name: 作业结束后自动部署时是否自动生成 Endpoint 名
            endpoint_name: 作业结束后自动部署的 Endpoint 名

        Raises:
            ValueError: problem_type 和 job_objective 只指定了其中一个
        """
        self.role = role
        self.output_kms_key = output_kms_key
        self.output_path = output_path
        self.base_job_name = base_job_name
        self.compression_type = compression_type
        self.volume_kms_key = volume_kms_key
        self.encrypt_inter_container_traffic = encrypt_inter_container_traffic
        self.vpc_config = vpc_config
        self.problem_type = problem_type
        self.max_candidates = max_candidates
        self.max_runtime_per_training_job_in_seconds = max_runtime_per_training_job_in_seconds
        self.total_job_runtime_in_seconds = total_job_runtime_in_seconds
        self.target_attribute_name = target_attribute_name
        self.job_objective = job_objective
        self.generate_candidate_definitions_only = generate_candidate_definitions_only
        self.tags = tags
        self.content_type = content_type
        self.s3_data_type = s3_data_type
        self.feature_specification_s3_uri = feature_specification_s3_uri
        self.validation_fraction = validation_fraction
        self.mode = mode
        self.auto_generate_endpoint_name = auto_generate_endpoint_name
        self.endpoint_name = endpoint_name

        self.current_job_name = None
        self.latest_auto_ml_job = None
        self._auto_ml_job_desc = None
        self._best_candidate = None
        self.sagemaker_session = sagemaker_session or Session()

        self._check_problem_type_and_job_objective(self.problem_type, self.job_objective)

    @staticmethod
    def _check_problem_type_and_job_objective(problem_type, job_objective):
        if not (problem_type and job_objective) and (problem_type or job_objective):
            raise ValueError(
                "One of problem type and objective metric provided. "
                "Either both of them should be provided or none of them should be provided."
            )

    # =========================================================================
    # 启动作业
    # =========================================================================

    def fit(self, inputs=None, wait: bool = True, job_name: Optional[str] = None):
        """
        启动 AutoML 作业

        Args:
            inputs: S3 URI、S3 URI 列表、AutoMLInput 或 AutoMLInput 列表
            wait: 是否等待完成
            job_name: 作业名称（默认由 base_job_name 生成，最长 32 字符）

        Raises:
            ValueError: 输入不是 S3 路径
        """
        self._prepare_for_auto_ml_job(job_name=job_name)

        input_config = self._format_inputs_to_input_config(inputs)
        self.sagemaker_session.auto_ml(
            input_config=input_config,
            output_config=job.prepare_output_config(self.output_path, self.output_kms_key),
            auto_ml_job_config=self._auto_ml_job_config(),
            role=self.sagemaker_session.expand_role(self.role),
            job_name=self.current_job_name,
            problem_type=self.problem_type,
            job_objective=self.job_objective,
            generate_candidate_definitions_only=self.generate_candidate_definitions_only,
            tags=self.tags,
            model_deploy_config=self._model_deploy_config(),
        )
        self.latest_auto_ml_job = self.current_job_name

        if wait:
            self.sagemaker_session.wait_for_auto_ml_job(self.current_job_name)

    def _prepare_for_auto_ml_job(self, job_name: Optional[str] = None):
        if job_name is not None:
            self.current_job_name = job_name
        else:
            base_name = self.base_job_name or "automl"
            self.current_job_name = name_from_base(base_name, max_length=AUTO_ML_JOB_NAME_MAX_LENGTH)

        if self.output_path is None:
            self.output_path = (
                s3_path_join(
                    "s3://",
                    self.sagemaker_session.default_bucket(),
                    self.sagemaker_session.default_bucket_prefix,
                )
                + "/"
            )

    def _format_inputs_to_input_config(self, inputs) -> Optional[List[dict]]:
        if inputs is None:
            return None

        if isinstance(inputs, AutoMLInput):
            return inputs.to_request_list()

        if isinstance(inputs, list) and inputs and all(isinstance(i, AutoMLInput) for i in inputs):
            input_config = []
            for channel in inputs:
                input_config.extend(channel.to_request_list())
            return input_config

        if isinstance(inputs, str):
            inputs = [inputs]
        if not isinstance(inputs, list):
            raise ValueError(
                f"Cannot format input {inputs}. Expecting a string or "
                "a list of strings or a list of AutoMLInputs."
            )

        channels = []
        for uri in inputs:
            if not isinstance(uri, str) or not uri.startswith("s3://"):
                raise ValueError(
                    f'AutoML inputs must be S3 URIs beginning with "s3://". Got "{uri}". '
                    "Upload local data with Session.upload_data first."
                )
            channel = TrainingInput(
                uri,
                compression=self.compression_type,
                content_type=self.content_type,
                s3_data_type=self.s3_data_type or "S3Prefix",
                target_attribute_name=self.target_attribute_name,
            ).config
            channels.append(channel)
        return channels

    def _auto_ml_job_config(self) -> dict:
        completion_criteria = {}
        if self.max_candidates is not None:
            completion_criteria["MaxCandidates"] = self.max_candidates
        if self.max_runtime_per_training_job_in_seconds is not None:
            completion_criteria["MaxRuntimePerTrainingJobInSeconds"] = (
                self.max_runtime_per_training_job_in_seconds
            )
        if self.total_job_runtime_in_seconds is not None:
            completion_criteria["MaxAutoMLJobRuntimeInSeconds"] = self.total_job_runtime_in_seconds

        auto_ml_job_config = {
            "CompletionCriteria": completion_criteria,
            "SecurityConfig": {
                "EnableInterContainerTrafficEncryption": self.encrypt_inter_container_traffic
            },
        }
        if self.volume_kms_key:
            auto_ml_job_config["SecurityConfig"]["VolumeKmsKeyId"] = self.volume_kms_key
        if self.vpc_config:
            auto_ml_job_config["SecurityConfig"]["VpcConfig"] = self.vpc_config
        if self.feature_specification_s3_uri:
            auto_ml_job_config["CandidateGenerationConfig"] = {
                "FeatureSpecificationS3Uri": self.feature_specification_s3_uri
            }
        if self.validation_fraction:
            auto_ml_job_config["DataSplitConfig"] = {"ValidationFraction": self.validation_fraction}
        if self.mode:
            auto_ml_job_config["Mode"] = self.mode
        return auto_ml_job_config

    def _model_deploy_config(self) -> Optional[dict]:
        model_deploy_config = {}
        if self.auto_generate_endpoint_name is not None:
            model_deploy_config["AutoGenerateEndpointName"] = self.auto_generate_endpoint_name
        if not self.auto_generate_endpoint_name and self.endpoint_name is not None:
            model_deploy_config["EndpointName"] = self.endpoint_name
        return model_deploy_config or None

    # =========================================================================
    # 关联 / 查询
    # =========================================================================

    @classmethod
    def attach(cls, auto_ml_job_name: str, sagemaker_session: Session = None) -> "AutoML":
        """关联已有的 AutoML 作业"""
        sagemaker_session = sagemaker_session or Session()

        desc = sagemaker_session.describe_auto_ml_job(auto_ml_job_name)
        first_input = desc["InputDataConfig"][0]
        job_config = desc.get("AutoMLJobConfig", {})
        security_config = job_config.get("SecurityConfig", {})
        completion_criteria = job_config.get("CompletionCriteria", {})
        deploy_config = desc.get("ModelDeployConfig", {})

        amlj = cls(
            role=desc["RoleArn"],
            target_attribute_name=first_input["TargetAttributeName"],
            output_kms_key=desc["OutputDataConfig"].get("KmsKeyId"),
            output_path=desc["OutputDataConfig"]["S3OutputPath"],
            base_job_name=auto_ml_job_name,
            compression_type=first_input.get("CompressionType"),
            sagemaker_session=sagemaker_session,
            volume_kms_key=security_config.get("VolumeKmsKeyId"),
            encrypt_inter_container_traffic=security_config.get(
                "EnableInterContainerTrafficEncryption", False
            ),
            vpc_config=security_config.get("VpcConfig"),
            problem_type=desc.get("ProblemType"),
            max_candidates=completion_criteria.get("MaxCandidates"),
            max_runtime_per_training_job_in_seconds=completion_criteria.get(
                "MaxRuntimePerTrainingJobInSeconds"
            ),
            total_job_runtime_in_seconds=completion_criteria.get("MaxAutoMLJobRuntimeInSeconds"),
            job_objective=desc.get("AutoMLJobObjective"),
            generate_candidate_definitions_only=desc.get("GenerateCandidateDefinitionsOnly", False),
            content_type=first_input.get("ContentType"),
            s3_data_type=first_input["DataSource"]["S3DataSource"].get("S3DataType"),
            feature_specification_s3_uri=job_config.get("CandidateGenerationConfig", {}).get(
                "FeatureSpecificationS3Uri"
            ),
            validation_fraction=job_config.get("DataSplitConfig", {}).get("ValidationFraction"),
            mode=job_config.get("Mode"),
            auto_generate_endpoint_name=deploy_config.get("AutoGenerateEndpointName"),
            endpoint_name=deploy_config.get("EndpointName"),
        )
        amlj.current_job_name = auto_ml_job_name
        amlj.latest_auto_ml_job = auto_ml_job_name
        amlj._auto_ml_job_desc = desc
        return amlj

    def describe_auto_ml_job(self, job_name: Optional[str] = None) -> dict:
        """DescribeAutoMLJob 响应（默认当前作业）"""
        if job_name is None:
            job_name = self.current_job_name
        self._auto_ml_job_desc = self.sagemaker_session.describe_auto_ml_job(job_name)
        return self._auto_ml_job_desc

    def best_candidate(self, job_name: Optional[str] = None) -> dict:
        """最优候选模型（结果会缓存）"""
        if self._best_candidate:
            return self._best_candidate

        if job_name is None:
            job_name = self.current_job_name
        if self._auto_ml_job_desc is None or self._auto_ml_job_desc["AutoMLJobName"] != job_name:
            self._auto_ml_job_desc = self.sagemaker_session.describe_auto_ml_job(job_name)

        self._best_candidate = self._auto_ml_job_desc["BestCandidate"]
        return self._best_candidate

    def list_candidates(
        self,
        job_name: Optional[str] = None,
        status_equals: Optional[str] = None,
        candidate_name: Optional[str] = None,
        candidate_arn: Optional[str] = None,
        sort_order: Optional[str] = None,
        sort_by: Optional[str] = None,
        max_results: Optional[int] = None,
    ) -> List[dict]:
        """列出候选模型，例如按 FinalObjectiveMetricValue 排序"""
        if job_name is None:
            job_name = self.current_job_name

        return self.sagemaker_session.list_candidates(
            job_name=job_name,
            status_equals=status_equals,
            candidate_name=candidate_name,
            candidate_arn=candidate_arn,
            sort_order=sort_order,
            sort_by=sort_by,
            max_results=max_results,
        )

    # =========================================================================
    # 模型 / 部署
    # =========================================================================

    def create_model(
        self,
        name: str,
        sagemaker_session: Session = None,
        candidate: Optional[dict] = None,
        vpc_config: Optional[dict] = None,
        enable_network_isolation: bool = False,
        model_kms_key: Optional[str] = None,
        predictor_cls=None,
        inference_response_keys: Optional[List[str]] = None,
    ) -> PipelineModel:
        """
        由候选模型的推理容器创建 PipelineModel

        Args:
            name: 管道模型名称
            candidate: 候选模型（默认最优候选）
            inference_response_keys: 推理响应中包含的内容，例如 ["predicted_label", "probability"]

        Raises:
            ValueError: 请求的响应内容不受支持
        """
        sagemaker_session = sagemaker_session or self.sagemaker_session

        if candidate is None:
            candidate = self.best_candidate()

        inference_containers = [
            dict(container, Environment=dict(container.get("Environment", {})))
            for container in candidate["InferenceContainers"]
        ]
        self.validate_and_update_inference_response(inference_containers, inference_response_keys)

        models = [
            Model(
                image_uri=container["Image"],
                model_data=container["ModelDataUrl"],
                role=self.role,
                env=container["Environment"],
                vpc_config=vpc_config,
                sagemaker_session=sagemaker_session,
                enable_network_isolation=enable_network_isolation,
                model_kms_key=model_kms_key,
            )
            for container in inference_containers
        ]

        return PipelineModel(
            models=models,
            role=self.role,
            predictor_cls=predictor_cls,
            name=name,
            vpc_config=vpc_config,
            enable_network_isolation=enable_network_isolation,
            sagemaker_session=sagemaker_session,
        )

    def deploy(
        self,
        initial_instance_count: int,
        instance_type: str,
        serializer=None,
        deserializer=None,
        candidate: Optional[dict] = None,
        sagemaker_session: Session = None,
        name: Optional[str] = None,
        endpoint_name: Optional[str] = None,
        tags: Optional[List[dict]] = None,
        wait: bool = True,
        vpc_config: Optional[dict] = None,
        enable_network_isolation: bool = False,
        model_kms_key: Optional[str] = None,
        predictor_cls=None,
        inference_response_keys: Optional[List[str]] = None,
    ):
        """
        部署候选模型（默认最优候选）

        Returns:
            predictor_cls 实例，未设置 predictor_cls 时返回 None
        """
        sagemaker_session = sagemaker_session or self.sagemaker_session
        model = self.create_model(
            name=name,
            sagemaker_session=sagemaker_session,
            candidate=candidate,
            vpc_config=vpc_config,
            enable_network_isolation=enable_network_isolation,
            model_kms_key=model_kms_key,
            predictor_cls=predictor_cls,
            inference_response_keys=inference_response_keys,
        )

        return model.deploy(
            initial_instance_count=initial_instance_count,
            instance_type=instance_type,
            serializer=serializer,
            deserializer=deserializer,
            endpoint_name=endpoint_name,
            tags=tags,
            wait=wait,
        )

    # =========================================================================
    # 推理响应内容
    # =========================================================================

    @staticmethod
    def _get_supported_inference_keys(container: dict, default=None) -> Optional[List[str]]:
        """
        容器通过 SAGEMAKER_INFERENCE_SUPPORTED 声明支持的响应内容

        Raises:
            KeyError: 容器没有声明且 default 为 None
        """
        try:
            return [x.strip() for x in container["Environment"][INFERENCE_SUPPORTED_ENV].split(",")]
        except KeyError:
            if default is None:
                raise
        return default

    @classmethod
    def _check_inference_keys(cls, inference_response_keys: List[str], containers: List[dict]):
        if not inference_response_keys:
            return

        try:
            supported_inference_keys = cls._get_supported_inference_keys(container=containers[-1])
        except KeyError:
            raise ValueError(
                "The inference model does not support selection of inference content beyond "
                "it's default content. Please retry without setting "
                "inference_response_keys key word argument."
            )

        bad_keys = [key for key in inference_response_keys if key not in supported_inference_keys]
        if bad_keys:
            raise ValueError(
                f"Requested inference output keys [{', '.join(bad_keys)}] are unsupported. "
                f"The supported inference keys are [{', '.join(supported_inference_keys)}]"
            )

    @classmethod
    def validate_and_update_inference_response(cls, inference_containers: List[dict], inference_response_keys: Optional[List[str]]):
        """
        校验响应内容，并设置每个容器的 SAGEMAKER_INFERENCE_OUTPUT / SAGEMAKER_INFERENCE_INPUT

        每个容器输出自己支持的那部分 key，下一个容器以上一个容器的输出作为输入

        Raises:
            ValueError: 最后一个容器不支持选择响应内容，或请求了不支持的 key
        """
        if not inference_response_keys:
            return

        cls._check_inference_keys(inference_response_keys, inference_containers)

        previous_container_output = None
        for container in inference_containers:
            supported_inference_keys_container = cls._get_supported_inference_keys(container, default=[])
            if not supported_inference_keys_container:
                previous_container_output = None
                continue

            current_container_output = ",".join(
                key for key in inference_response_keys if key in supported_inference_keys_container
            )

            if previous_container_output:
                container["Environment"][INFERENCE_INPUT_ENV] = previous_container_output
            if current_container_output:
                container["Environment"][INFERENCE_OUTPUT_ENV] = current_container_output
            previous_container_output = current_container_output or None
