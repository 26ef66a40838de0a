# =============================================================================
# xgboost.py - XGBoost 框架 (Script Mode)
# =============================================================================
# XGBoost:          训练 Estimator（sagemaker-xgboost 镜像 + 用户脚本）
# XGBoostModel:     推理模型
# XGBoostPredictor: 默认 LibSVM 请求 / CSV 响应
# =============================================================================

import logging
from typing import Optional

from . import vpc_utils
from .deserializers import CSVDeserializer
from .estimator import Framework
from .model import FrameworkModel
from .predictor import Predictor
from .serializers import LibSVMSerializer

logger = logging.getLogger(__name__)

FRAMEWORK_NAME = "xgboost"


class XGBoostPredictor(Predictor):
    """XGBoost Endpoint 客户端"""

    def __init__(
        self,
        endpoint_name: str,
        sagemaker_session=None,
        serializer=LibSVMSerializer(),
        deserializer=CSVDeserializer(),
    ):
        super().__init__(endpoint_name, sagemaker_session, serializer, deserializer)


class XGBoostModel(FrameworkModel):
    """
    XGBoost 推理模型

    Example:
        model = XGBoostModel(
            model_data="s3://bucket/model.tar.gz",
            role="arn:aws:iam::111122223333:role/SageMakerRole",
            entry_point="inference.py",
            framework_version="1.7-1",
        )
    """

    _framework_name = FRAMEWORK_NAME

    def __init__(
        self,
        model_data: str,
        role: str,
        entry_point: str,
        framework_version: str,
        image_uri: Optional[str] = None,
        py_version: str = "py3",
        predictor_cls=XGBoostPredictor,
        model_server_workers: Optional[int] = None,
        **kwargs,
    ):
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


class XGBoost(Framework):
    """
    XGBoost Estimator

    Example:
        xgb = XGBoost(
            entry_point="train.py",
            framework_version="1.7-1",
            role="arn:aws:iam::111122223333:role/SageMakerRole",
            instance_count=1,
            instance_type="ml.m5.xlarge",
            hyperparameters={"max_depth": 5, "num_round": 100},
        )
        xgb.fit({"train": "s3://bucket/train/"})
    """

    _framework_name = FRAMEWORK_NAME

    def __init__(
        self,
        entry_point: str,
        framework_version: str,
        source_dir: Optional[str] = None,
        hyperparameters: Optional[dict] = None,
        py_version: str = "py3",
        image_uri: Optional[str] = None,
        **kwargs,
    ):
        """
        Args:
            entry_point: 训练脚本
            framework_version: XGBoost 版本（如 1.7-1）
            py_version: Python 版本（1.2 之后的镜像不区分 Python 版本）
            image_uri: 训练镜像（默认按版本解析）
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

    def create_model(
        self,
        model_server_workers: Optional[int] = None,
        role: Optional[str] = None,
        vpc_config_override=vpc_utils.VPC_CONFIG_DEFAULT,
        entry_point: Optional[str] = None,
        source_dir: Optional[str] = None,
        dependencies=None,
        **kwargs,
    ) -> XGBoostModel:
        """
        由训练结果创建 XGBoostModel，默认沿用训练脚本和训练镜像版本
        """
        if "image_uri" not in kwargs:
            kwargs["image_uri"] = self.image_uri

        return XGBoostModel(
            self.model_data,
            role or self.role,
            entry_point or self._model_entry_point(),
            self.framework_version,
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
        # 1.2 之后的镜像 Tag 没有 Python 版本
        init_params["py_version"] = init_params.get("py_version") or "py3"
        init_params.setdefault("framework_version", None)
        return init_params
