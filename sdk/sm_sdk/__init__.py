# =============================================================================
# sm_sdk - SageMaker 训练 / 部署 / 推理工具库
# =============================================================================
# 基于 boto3 封装 SageMaker 的训练作业、模型部署、批量推理、
# 超参数调优和 AutoML，并提供官方镜像 URI 解析
#
# 使用方法:
#   from sm_sdk import Session, Estimator, image_uris
#
# =============================================================================

from . import image_uris
from .config import SessionConfig, get_config, print_config
from .session import Session, get_execution_role
from .inputs import FileSystemInput, ShuffleConfig, TrainingInput
from .estimator import Estimator, EstimatorBase, Framework
from .xgboost import XGBoost, XGBoostModel, XGBoostPredictor
from .sklearn import SKLearn, SKLearnModel, SKLearnPredictor
from .pytorch import PyTorch, PyTorchModel, PyTorchPredictor
from .amazon_estimator import AmazonAlgorithmEstimatorBase, FileSystemRecordSet, RecordSet
from .kmeans import KMeans, KMeansModel, KMeansPredictor
from .model import DataCaptureConfig, FrameworkModel, Model, ServerlessInferenceConfig
from .pipeline import PipelineModel
from .predictor import Predictor
from .transformer import Transformer
from .parameter import CategoricalParameter, ContinuousParameter, IntegerParameter
from .tuner import HyperparameterTuner, WarmStartConfig, WarmStartTypes
from .automl import AutoML, AutoMLInput
from .exceptions import UnexpectedStatusException

__version__ = "1.0.0"

__all__ = [
    # Config / Session
    "SessionConfig",
    "get_config",
    "print_config",
    "Session",
    "get_execution_role",
    "image_uris",
    # Inputs
    "TrainingInput",
    "FileSystemInput",
    "ShuffleConfig",
    # Training
    "EstimatorBase",
    "Estimator",
    "Framework",
    "XGBoost",
    "SKLearn",
    "PyTorch",
    "AmazonAlgorithmEstimatorBase",
    "RecordSet",
    "FileSystemRecordSet",
    "KMeans",
    # Hosting
    "Model",
    "FrameworkModel",
    "XGBoostModel",
    "SKLearnModel",
    "PyTorchModel",
    "KMeansModel",
    "PipelineModel",
    "DataCaptureConfig",
    "ServerlessInferenceConfig",
    "Predictor",
    "XGBoostPredictor",
    "SKLearnPredictor",
    "PyTorchPredictor",
    "KMeansPredictor",
    # Batch
    "Transformer",
    # Tuning
    "HyperparameterTuner",
    "WarmStartConfig",
    "WarmStartTypes",
    "ContinuousParameter",
    "IntegerParameter",
    "CategoricalParameter",
    # AutoML
    "AutoML",
    "AutoMLInput",
    # Errors
    "UnexpectedStatusException",
]
