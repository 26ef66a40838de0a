# =============================================================================
# pytorch.py - PyTorch 框架
# =============================================================================
# 训练使用 pytorch-training 镜像，推理使用 pytorch-inference 镜像
# 分布式训练通过 distribution 参数开启
# =============================================================================

import logging
from typing import Optional

from . import vpc_utils
from .deserializers import NumpyDeserializer
from .estimator import Framework
from .model import FrameworkModel
from .predictor import Predictor
from .serializers import NumpySerializer

logger = logging.getLogger(__name__)

FRAMEWORK_NAME = "pytorch"

# distribution 选项 -> 容器识别的超参数
DISTRIBUTION_HYPERPARAMETERS = {
    "torch_distributed": "sagemaker_torch_distributed_enabled",
    "pytorchddp": "sagemaker_pytorch_ddp_enabled",
}


class PyTorchPredictor(Predictor):
    """PyTorch Endpoint 客户端（numpy npy 格式收发）"""

    def __init__(
        self,
        endpoint_name: str,
        sagemaker_session=None,
        serializer=NumpySerializer(),
        deserializer=NumpyDeserializer(),
    ):
        super().__init__(endpoint_name, sagemaker_session, serializer, deserializer)


class PyTorchModel(FrameworkModel):
    """PyTorch 推理模型"""

    _framework_name = FRAMEWORK_NAME

    def __init__(
        self,
        model_data: str,
        role: str,
        entry_point: str,
        framework_version: Optional[str] = None,
        py_version: Optional[str] = None,
        image_uri: Optional[str] = None,
        predictor_cls=PyTorchPredictor,
        model_server_workers: Optional[int] = None,
        **kwargs,
    ):
        if image_uri is None and framework_version is None:
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


class PyTorch(Framework):
    """
    PyTorch Estimator

    Example:
        pytorch = PyTorch(
            entry_point="train.py",
            framework_version="2.0.1",
            py_version="py310",
            role="arn:aws:iam::111122223333:role/SageMakerRole",
            instance_count=2,
            instance_type="ml.g5.xlarge",
            distribution={"torch_distributed": {"enabled": True}},
        )
        pytorch.fit({"training": "s3://bucket/train/"})
    """

    _framework_name = FRAMEWORK_NAME

    def __init__(
        self,
        entry_point: str,
        framework_version: Optional[str] = None,
        py_version: Optional[str] = None,
        source_dir: Optional[str] = None,
        hyperparameters: Optional[dict] = None,
        image_uri: Optional[str] = None,
        distribution: Optional[dict] = None,
        **kwargs,
    ):
        """
        Args:
            entry_point: 训练脚本
            framework_version: PyTorch 版本（如 2.0.1）
            py_version: Python 版本（如 py310）
            image_uri: 训练镜像（默认按版本解析）
            distribution: 分布式训练配置，如 {"torch_distributed": {"enabled": True}}

        Raises:
            ValueError: 缺少版本和镜像，或 distribution 包含不支持的选项
        """
        super().__init__(
            entry_point,
            source_dir,
            hyperparameters,
            image_uri=image_uri,
            framework_version=framework_version,
            py_version=py_version,
            **kwargs,
        )

        self.distribution = distribution or {}
        unknown = set(self.distribution) - set(DISTRIBUTION_HYPERPARAMETERS)
        if unknown:
            raise ValueError(
                f"Unsupported distribution option(s): {', '.join(sorted(unknown))}. "
                f"Supported options: {', '.join(DISTRIBUTION_HYPERPARAMETERS)}"
            )

    def hyperparameters(self) -> dict:
        hyperparameters = super().hyperparameters()
        for option, hyperparameter in DISTRIBUTION_HYPERPARAMETERS.items():
            enabled = self.distribution.get(option, {}).get("enabled", False)
            if enabled:
                hyperparameters[hyperparameter] = "true"
        return hyperparameters

    def create_model(
        self,
        model_server_workers: Optional[int] = None,
        role: Optional[str] = None,
        vpc_config_override=vpc_utils.VPC_CONFIG_DEFAULT,
        entry_point: Optional[str] = None,
        source_dir: Optional[str] = None,
        dependencies=None,
        **kwargs,
    ) -> PyTorchModel:
        """由训练结果创建 PyTorchModel"""
        if "image_uri" not in kwargs:
            kwargs["image_uri"] = self.image_uri

        return PyTorchModel(
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

    @classmethod
    def _prepare_init_params_from_job_description(cls, job_details: dict, model_channel_name: Optional[str] = None) -> dict:
        init_params = super()._prepare_init_params_from_job_description(job_details, model_channel_name)

        distribution = {}
        for option, hyperparameter in DISTRIBUTION_HYPERPARAMETERS.items():
            if init_params["hyperparameters"].pop(hyperparameter, None):
                distribution[option] = {"enabled": True}
        if distribution:
            init_params["distribution"] = distribution
        return init_params
