# =============================================================================
# sklearn.py - Scikit-learn 框架
# =============================================================================
# 只支持 CPU 实例
# =============================================================================

import logging
from typing import Optional

from . import vpc_utils
from .deserializers import NumpyDeserializer
from .estimator import Framework
from .fw_utils import validate_not_gpu_instance_type
from .model import FrameworkModel
from .predictor import Predictor
from .serializers import NumpySerializer

logger = logging.getLogger(__name__)

FRAMEWORK_NAME = "sklearn"


class SKLearnPredictor(Predictor):
    """Scikit-learn Endpoint 客户端（numpy npy 格式收发）"""

    def __init__(
        self,
        endpoint_name: str,
        sagemaker_session=None,
        serializer=NumpySerializer(),
        deserializer=NumpyDeserializer(),
    ):
        super().__init__(endpoint_name, sagemaker_session, serializer, deserializer)


class SKLearnModel(FrameworkModel):
    """Scikit-learn 推理模型"""

    _framework_name = FRAMEWORK_NAME

    def __init__(
        self,
        model_data: str,
        role: str,
        entry_point: str,
        framework_version: Optional[str] = None,
        py_version: str = "py3",
        image_uri: Optional[str] = None,
        predictor_cls=SKLearnPredictor,
        model_server_workers: Optional[int] = None,
        **kwargs,
    ):
        """
        Raises:
            ValueError: 既未指定 framework_version 也未指定 image_uri
        """
        if framework_version is None and image_uri is None:
            raise ValueError(
                "framework_version was None, yet image_uri was also None. "
                "Either specify framework_version or specify image_uri."
            )
        super().__init__(
            model_data,
            image_uri,
            role,
            entry_point,
            predictor_cls=predictor_cls,
            model_server_workers=model_server_workers,
            **kwargs,
        )
        self.framework_version = framework_version
        self.py_version = py_version

    def serving_image_uri(self, region_name: str, instance_type: Optional[str], accelerator_type: Optional[str] = None) -> str:
        validate_not_gpu_instance_type(instance_type)
        return super().serving_image_uri(region_name, instance_type, accelerator_type)


class SKLearn(Framework):
    """
    Scikit-learn Estimator

    Example:
        sklearn = SKLearn(
            entry_point="train.py",
            framework_version="1.2-1",
            role="arn:aws:iam::111122223333:role/SageMakerRole",
            instance_type="ml.m5.xlarge",
        )
        sklearn.fit({"train": "s3://bucket/train/"})
    """

    _framework_name = FRAMEWORK_NAME

    def __init__(
        self,
        entry_point: str,
        framework_version: Optional[str] = None,
        py_version: str = "py3",
        source_dir: Optional[str] = None,
        hyperparameters: Optional[dict] = None,
        image_uri: Optional[str] = None,
        **kwargs,
    ):
        """
        Args:
            entry_point: 训练脚本
            framework_version: Scikit-learn 版本（如 1.2-1）
            py_version: Python 版本
            image_uri: 训练镜像（默认按版本解析）

        Raises:
            ValueError: GPU 实例，或缺少版本和镜像
        """
        instance_type = kwargs.get("instance_type")
        validate_not_gpu_instance_type(instance_type)

        # 单实例训练
        kwargs.setdefault("instance_count", 1)

        super().__init__(
            entry_point,
            source_dir,
            hyperparameters,
            image_uri=image_uri,
            framework_version=framework_version,
            py_version=py_version,
            **kwargs,
        )

    def create_model(
        self,
        model_server_workers: Optional[int] = None,
        role: Optional[str] = None,
        vpc_config_override=vpc_utils.VPC_CONFIG_DEFAULT,
        entry_point: Optional[str] = None,
        source_dir: Optional[str] = None,
        dependencies=None,
        **kwargs,
    ) -> SKLearnModel:
        """由训练结果创建 SKLearnModel"""
        if "image_uri" not in kwargs:
            kwargs["image_uri"] = self.image_uri

        return SKLearnModel(
            self.model_data,
            role or self.role,
            entry_point or self._model_entry_point(),
            framework_version=self.framework_version,
            py_version=self.py_version,
            source_dir=source_dir or self._model_source_dir(),
            container_log_level=self.container_log_level,
            code_location=self.code_location,
            sagemaker_session=self.sagemaker_session,
            model_server_workers=model_server_workers,
            vpc_config=self.get_vpc_config(vpc_config_override),
            enable_network_isolation=self.enable_network_isolation(),
            dependencies=dependencies or self.dependencies,
            **kwargs,
        )
