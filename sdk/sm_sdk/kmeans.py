# =============================================================================
# kmeans.py - K-Means 内置算法
# =============================================================================

import json
import logging
from typing import Optional

from . import image_uris, vpc_utils
from .amazon_estimator import AmazonAlgorithmEstimatorBase
from .deserializers import RecordDeserializer
from .hyperparameter import Hyperparameter
from .model import Model
from .predictor import Predictor
from .serializers import RecordSerializer
from .session import Session
from .validation import ge, gt, isin, le

logger = logging.getLogger(__name__)


def _metric_list(value) -> list:
    # DescribeTrainingJob 返回 JSON 字符串
    if isinstance(value, str):
        return json.loads(value)
    return list(value)


class KMeans(AmazonAlgorithmEstimatorBase):
    """
    K-Means 聚类

    Example:
        kmeans = KMeans(
            role="arn:aws:iam::111122223333:role/SageMakerRole",
            instance_count=2,
            instance_type="ml.c5.xlarge",
            k=10,
        )
        kmeans.fit(kmeans.record_set(train_array))
        predictor = kmeans.deploy(initial_instance_count=1, instance_type="ml.m5.large")
        clusters = predictor.predict(test_array)
    """

    repo_name = "kmeans"
    repo_version = "1"

    k = Hyperparameter("k", gt(1), "An integer greater-than 1", int)
    init_method = Hyperparameter("init_method", isin("random", "kmeans++"), 'One of "random", "kmeans++"', str)
    max_iterations = Hyperparameter("local_lloyd_max_iter", gt(0), "An integer greater-than 0", int)
    tol = Hyperparameter("local_lloyd_tol", (ge(0), le(1)), "An float in [0, 1]", float)
    num_trials = Hyperparameter("local_lloyd_num_trials", gt(0), "An integer greater-than 0", int)
    local_init_method = Hyperparameter(
        "local_lloyd_init_method", isin("random", "kmeans++"), 'One of "random", "kmeans++"', str
    )
    half_life_time_size = Hyperparameter("half_life_time_size", ge(0), "An integer greater-than-or-equal-to 0", int)
    epochs = Hyperparameter("epochs", gt(0), "An integer greater-than 0", int)
    center_factor = Hyperparameter("extra_center_factor", gt(0), "An integer greater-than 0", int)
    eval_metrics = Hyperparameter(
        "eval_metrics",
        lambda metrics: all(m in ("msd", "ssd") for m in metrics),
        'A list of "msd" or "ssd"',
        _metric_list,
    )

    def __init__(
        self,
        role: str,
        instance_count: Optional[int] = None,
        instance_type: Optional[str] = None,
        k: Optional[int] = None,
        init_method: Optional[str] = None,
        max_iterations: Optional[int] = None,
        tol: Optional[float] = None,
        num_trials: Optional[int] = None,
        local_init_method: Optional[str] = None,
        half_life_time_size: Optional[int] = None,
        epochs: Optional[int] = None,
        center_factor: Optional[int] = None,
        eval_metrics: Optional[list] = None,
        **kwargs,
    ):
        """
        Args:
            k: 聚类数
            init_method: 初始中心选择方式 (random, kmeans++)
            max_iterations: 本地 Lloyd 迭代上限
            tol: 本地 Lloyd 收敛阈值
            num_trials: 本地 Lloyd 运行次数（取最优）
            local_init_method: 本地 Lloyd 初始化方式 (random, kmeans++)
            half_life_time_size: 衰减半衰期（样本数）
            epochs: 训练轮数
            center_factor: 额外中心倍数
            eval_metrics: 测试通道的评估指标 (msd, ssd)
        """
        super().__init__(role, instance_count, instance_type, **kwargs)
        self.k = k
        self.init_method = init_method
        self.max_iterations = max_iterations
        self.tol = tol
        self.num_trials = num_trials
        self.local_init_method = local_init_method
        self.half_life_time_size = half_life_time_size
        self.epochs = epochs
        self.center_factor = center_factor
        self.eval_metrics = eval_metrics

    def create_model(self, vpc_config_override=vpc_utils.VPC_CONFIG_DEFAULT, **kwargs) -> "KMeansModel":
        """由训练结果创建 KMeansModel"""
        return KMeansModel(
            self.model_data,
            self.role,
            self.sagemaker_session,
            vpc_config=self.get_vpc_config(vpc_config_override),
            **kwargs,
        )

    def _prepare_for_training(self, records, mini_batch_size: Optional[int] = 5000, job_name: Optional[str] = None):
        super()._prepare_for_training(records, mini_batch_size=mini_batch_size, job_name=job_name)

    def hyperparameters(self) -> dict:
        hp_dict = {"force_dense": "True"}
        hp_dict.update(super().hyperparameters())
        return hp_dict


class KMeansPredictor(Predictor):
    """
    K-Means Endpoint 客户端

    请求和响应都使用 protobuf Record；每条响应的 label 中包含
    closest_cluster 和 distance_to_cluster
    """

    def __init__(
        self,
        endpoint_name: str,
        sagemaker_session=None,
        serializer=RecordSerializer(),
        deserializer=RecordDeserializer(),
    ):
        super().__init__(endpoint_name, sagemaker_session, serializer, deserializer)


class KMeansModel(Model):
    """K-Means 推理模型"""

    def __init__(self, model_data: str, role: str, sagemaker_session: Session = None, **kwargs):
        sagemaker_session = sagemaker_session or Session()
        image_uri = image_uris.retrieve(
            KMeans.repo_name,
            sagemaker_session.boto_region_name,
            version=KMeans.repo_version,
        )
        kwargs.pop("image_uri", None)
        kwargs.setdefault("predictor_cls", KMeansPredictor)

        super().__init__(
            image_uri,
            model_data,
            role,
            sagemaker_session=sagemaker_session,
            **kwargs,
        )
