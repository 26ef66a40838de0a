# =============================================================================
# pipeline.py - 推理管道模型
# =============================================================================
# 多个容器按顺序串联成一个 SageMaker Model（例如 特征处理 -> 算法 -> 后处理）
# =============================================================================

import logging
from typing import List, Optional

from .session import Session, pipeline_container_def, production_variant
from .transformer import Transformer
from .utils import base_name_from_image, name_from_base

logger = logging.getLogger(__name__)


class PipelineModel:
    """
    推理管道

    Example:
        pipeline = PipelineModel(
            models=[sparkml_model, xgboost_model],
            role="arn:aws:iam::111122223333:role/SageMakerRole",
        )
        pipeline.deploy(initial_instance_count=1, instance_type="ml.m5.large")
    """

    def __init__(
        self,
        models: list,
        role: str,
        predictor_cls=None,
        name: Optional[str] = None,
        vpc_config: Optional[dict] = None,
        sagemaker_session: Session = None,
        enable_network_isolation: bool = False,
    ):
        """
        Args:
            models: Model 列表（按调用顺序）
            role: 执行角色
            predictor_cls: deploy() 返回的 Predictor 类
            name: 模型名称（默认由第一个容器镜像名生成）
            vpc_config: VpcConfig
            sagemaker_session: Session（默认新建）
            enable_network_isolation: 是否启用网络隔离
        """
        self.models = models
        self.role = role
        self.predictor_cls = predictor_cls
        self.name = name
        self.vpc_config = vpc_config
        self.sagemaker_session = sagemaker_session
        self.enable_network_isolation = enable_network_isolation
        self.endpoint_name = None

    def _init_sagemaker_session_if_does_not_exist(self):
        if self.sagemaker_session is None:
            self.sagemaker_session = Session()

    def pipeline_container_def(self, instance_type: Optional[str] = None) -> List[dict]:
        """全部容器的定义（按顺序）"""
        return pipeline_container_def(self.models, instance_type)

    def _create_sagemaker_pipeline_model(self, instance_type: Optional[str] = None, tags: Optional[List[dict]] = None):
        self._init_sagemaker_session_if_does_not_exist()
        for model in self.models:
            if getattr(model, "sagemaker_session", None) is None:
                model.sagemaker_session = self.sagemaker_session

        containers = self.pipeline_container_def(instance_type)
        self.name = self.name or name_from_base(base_name_from_image(containers[0]["Image"]))
        self.sagemaker_session.create_model(
            self.name,
            self.role,
            containers,
            vpc_config=self.vpc_config,
            enable_network_isolation=self.enable_network_isolation,
            tags=tags,
        )

    def deploy(
        self,
        initial_instance_count: int,
        instance_type: str,
        serializer=None,
        deserializer=None,
        endpoint_name: Optional[str] = None,
        tags: Optional[List[dict]] = None,
        wait: bool = True,
        update_endpoint: bool = False,
        data_capture_config=None,
        kms_key: Optional[str] = None,
    ):
        """
        部署推理管道

        Args:
            update_endpoint: Endpoint 已存在时切换到新的 EndpointConfig

        Returns:
            predictor_cls 实例，未设置 predictor_cls 时返回 None
        """
        self._create_sagemaker_pipeline_model(instance_type, tags=tags)

        variant = production_variant(self.name, instance_type, initial_instance_count)
        self.endpoint_name = endpoint_name or self.name

        data_capture_config_dict = None
        if data_capture_config is not None:
            data_capture_config_dict = data_capture_config._to_request_dict()

        if update_endpoint:
            endpoint_config_name = self.sagemaker_session.create_endpoint_config(
                name=self.name,
                model_name=self.name,
                initial_instance_count=initial_instance_count,
                instance_type=instance_type,
                tags=tags,
                kms_key=kms_key,
                data_capture_config_dict=data_capture_config_dict,
            )
            self.sagemaker_session.update_endpoint(self.endpoint_name, endpoint_config_name, wait=wait)
        else:
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
        env: Optional[dict] = None,
        max_concurrent_transforms: Optional[int] = None,
        max_payload: Optional[int] = None,
        tags: Optional[List[dict]] = None,
        volume_kms_key: Optional[str] = None,
    ) -> Transformer:
        """创建管道模型并返回对应的 Transformer"""
        self._create_sagemaker_pipeline_model(instance_type, tags=tags)

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
            base_transform_job_name=self.name,
            volume_kms_key=volume_kms_key,
            sagemaker_session=self.sagemaker_session,
        )

    def delete_model(self):
        """
        Raises:
            ValueError: 管道模型尚未创建
        """
        if self.name is None:
            raise ValueError(
                "The SageMaker model must be created before attempting to delete it."
            )
        self._init_sagemaker_session_if_does_not_exist()
        self.sagemaker_session.delete_model(self.name)
