# =============================================================================
# predictor.py - Endpoint 调用
# =============================================================================
# Predictor 负责序列化请求、调用 InvokeEndpoint、反序列化响应，
# 以及更新 / 删除 Endpoint
# =============================================================================

import logging
from typing import List, Optional

from .deserializers import BytesDeserializer
from .serializers import IdentitySerializer
from .session import Session, production_variant
from .utils import name_from_base

logger = logging.getLogger(__name__)


class Predictor:
    """
    实时推理 Endpoint 客户端

    Example:
        predictor = Predictor(
            "xgboost-2024-01-01-00-00-00-000",
            serializer=CSVSerializer(),
            deserializer=JSONDeserializer(),
        )
        result = predictor.predict([[1.0, 2.0, 3.0]])
    """

    def __init__(
        self,
        endpoint_name: str,
        sagemaker_session: Session = None,
        serializer=IdentitySerializer(),
        deserializer=BytesDeserializer(),
    ):
        """
        Args:
            endpoint_name: Endpoint 名称
            sagemaker_session: Session（默认新建）
            serializer: 请求序列化器
            deserializer: 响应反序列化器
        """
        self.endpoint_name = endpoint_name
        self.sagemaker_session = sagemaker_session or Session()
        self.serializer = serializer
        self.deserializer = deserializer
        self._endpoint_config_name = None
        self._model_names = None

    def predict(
        self,
        data,
        initial_args: Optional[dict] = None,
        target_model: Optional[str] = None,
        target_variant: Optional[str] = None,
        inference_id: Optional[str] = None,
    ):
        """
        调用 Endpoint 推理

        Args:
            data: 输入数据（由 serializer 序列化）
            initial_args: 额外的 InvokeEndpoint 参数（优先于默认值）
            target_model: 多模型 Endpoint 的目标模型
            target_variant: 目标 ProductionVariant
            inference_id: 推理请求 ID（用于数据采集）

        Returns:
            deserializer 反序列化后的结果
        """
        request_args = self._create_request_args(
            data, initial_args, target_model, target_variant, inference_id
        )
        response = self.sagemaker_session.sagemaker_runtime_client.invoke_endpoint(**request_args)
        return self._handle_response(response)

    def _handle_response(self, response: dict):
        response_body = response["Body"]
        content_type = response.get("ContentType", "application/octet-stream")
        return self.deserializer.deserialize(response_body, content_type)

    def _create_request_args(
        self,
        data,
        initial_args: Optional[dict] = None,
        target_model: Optional[str] = None,
        target_variant: Optional[str] = None,
        inference_id: Optional[str] = None,
    ) -> dict:
        args = dict(initial_args) if initial_args else {}

        if "EndpointName" not in args:
            args["EndpointName"] = self.endpoint_name
        if "ContentType" not in args:
            args["ContentType"] = self.content_type
        if "Accept" not in args:
            args["Accept"] = ", ".join(self.accept)

        if target_model:
            args["TargetModel"] = target_model
        if target_variant:
            args["TargetVariant"] = target_variant
        if inference_id:
            args["InferenceId"] = inference_id

        args["Body"] = self.serializer.serialize(data)
        return args

    def update_endpoint(
        self,
        initial_instance_count: Optional[int] = None,
        instance_type: Optional[str] = None,
        accelerator_type: Optional[str] = None,
        model_name: Optional[str] = None,
        tags: Optional[List[dict]] = None,
        kms_key: Optional[str] = None,
        data_capture_config_dict: Optional[dict] = None,
        wait: bool = True,
    ):
        """
        用新的 EndpointConfig 更新 Endpoint（蓝绿部署）

        新配置以当前配置为模板；指定实例参数或模型时替换 ProductionVariant

        Raises:
            ValueError: 只指定了实例数量或类型之一，或 Endpoint 有多个模型而未指定 model_name
        """
        production_variants = None
        current_model_names = self._get_model_names()

        if initial_instance_count or instance_type or accelerator_type or model_name:
            if instance_type is None or initial_instance_count is None:
                raise ValueError(
                    "Missing initial_instance_count and/or instance_type. Provided values: "
                    f"initial_instance_count={initial_instance_count}, instance_type={instance_type}."
                )

            if model_name is None:
                if len(current_model_names) > 1:
                    raise ValueError(
                        "Unable to choose a default model for a new EndpointConfig because "
                        f"the endpoint has multiple models: {', '.join(current_model_names)}"
                    )
                model_name = current_model_names[0]
            else:
                self._model_names = [model_name]

            production_variants = [
                production_variant(
                    model_name,
                    instance_type,
                    initial_instance_count=initial_instance_count,
                    accelerator_type=accelerator_type,
                )
            ]

        current_endpoint_config_name = self._get_endpoint_config_name()
        new_endpoint_config_name = name_from_base(current_endpoint_config_name)
        self.sagemaker_session.create_endpoint_config_from_existing(
            current_endpoint_config_name,
            new_endpoint_config_name,
            new_tags=tags,
            new_kms_key=kms_key,
            new_data_capture_config_dict=data_capture_config_dict,
            new_production_variants=production_variants,
        )
        self.sagemaker_session.update_endpoint(self.endpoint_name, new_endpoint_config_name, wait=wait)
        self._endpoint_config_name = new_endpoint_config_name

    def _delete_endpoint_config(self):
        self.sagemaker_session.delete_endpoint_config(self._get_endpoint_config_name())

    def delete_endpoint(self, delete_endpoint_config: bool = True):
        """删除 Endpoint（默认同时删除 EndpointConfig）"""
        if delete_endpoint_config:
            self._delete_endpoint_config()
        self.sagemaker_session.delete_endpoint(self.endpoint_name)

    def delete_model(self):
        """删除 Endpoint 使用的全部模型"""
        for model_name in self._get_model_names():
            self.sagemaker_session.delete_model(model_name)

    def _get_endpoint_config_name(self) -> str:
        if self._endpoint_config_name is not None:
            return self._endpoint_config_name
        endpoint_desc = self.sagemaker_session.describe_endpoint(self.endpoint_name)
        self._endpoint_config_name = endpoint_desc["EndpointConfigName"]
        return self._endpoint_config_name

    def _get_model_names(self) -> List[str]:
        if self._model_names is not None:
            return self._model_names
        endpoint_config = self.sagemaker_session.describe_endpoint_config(
            self._get_endpoint_config_name()
        )
        self._model_names = [v["ModelName"] for v in endpoint_config["ProductionVariants"]]
        return self._model_names

    @property
    def content_type(self) -> str:
        return self.serializer.CONTENT_TYPE

    @property
    def accept(self):
        return self.deserializer.ACCEPT

    @property
    def endpoint(self) -> str:
        return self.endpoint_name
