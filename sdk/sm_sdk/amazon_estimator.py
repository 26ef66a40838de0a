# =============================================================================
# amazon_estimator.py - SageMaker 内置算法 Estimator 基类
# =============================================================================
# 内置算法（KMeans 等）使用 protobuf RecordIO 格式的训练数据：
#   1. record_set() 把 numpy 矩阵分片写成 RecordIO 并上传到 S3
#   2. 生成 .amazon.manifest 清单文件
#   3. fit() 使用 ShardedByS3Key 方式把分片分发到各个训练实例
# =============================================================================

import json
import logging
import tempfile
from typing import Optional

import numpy as np

from . import image_uris
from .estimator import EstimatorBase
from .hyperparameter import Hyperparameter
from .inputs import FileSystemInput, TrainingInput
from .record import write_numpy_to_dense_tensor
from .s3 import parse_s3_url, s3_path_join
from .utils import sagemaker_timestamp
from .validation import gt

logger = logging.getLogger(__name__)


class AmazonAlgorithmEstimatorBase(EstimatorBase):
    """
    内置算法 Estimator 基类

    子类通过 repo_name / repo_version 指定算法镜像，
    并用 Hyperparameter 描述符声明超参数
    """

    repo_name: Optional[str] = None
    repo_version: Optional[str] = None

    feature_dim = Hyperparameter("feature_dim", gt(0), "An integer greater-than 0", int)
    mini_batch_size = Hyperparameter("mini_batch_size", gt(0), "An integer greater-than 0", int)

    def __init__(
        self,
        role: str,
        instance_count: Optional[int] = None,
        instance_type: Optional[str] = None,
        data_location: Optional[str] = None,
        enable_network_isolation: bool = False,
        **kwargs,
    ):
        """
        Args:
            role: 执行角色
            instance_count: 训练实例数量（也是 record_set 的分片数）
            instance_type: 训练实例类型
            data_location: record_set 上传位置（默认 s3://{默认 Bucket}/sagemaker-record-sets/）
            enable_network_isolation: 是否启用网络隔离
            **kwargs: EstimatorBase 的其余参数
        """
        super().__init__(
            role,
            instance_count,
            instance_type,
            enable_network_isolation=enable_network_isolation,
            **kwargs,
        )
        self._data_location = None
        self.data_location = data_location

    def training_image_uri(self) -> str:
        return image_uris.retrieve(
            self.repo_name,
            self.sagemaker_session.boto_region_name,
            version=self.repo_version,
        )

    def hyperparameters(self) -> dict:
        return Hyperparameter.serialize_all(self)

    @property
    def data_location(self) -> str:
        if self._data_location is None:
            self._data_location = (
                s3_path_join(
                    "s3://",
                    self.sagemaker_session.default_bucket(),
                    self.sagemaker_session.default_bucket_prefix,
                    "sagemaker-record-sets",
                )
                + "/"
            )
        return self._data_location

    @data_location.setter
    def data_location(self, data_location: Optional[str]):
        """
        Raises:
            ValueError: 不是 s3:// 开头的路径
        """
        if data_location is None:
            self._data_location = None
            return
        if not data_location.startswith("s3://"):
            raise ValueError(f'Expecting an S3 URL beginning with "s3://". Got "{data_location}"')
        if data_location[-1] != "/":
            data_location = data_location + "/"
        self._data_location = data_location

    @classmethod
    def _prepare_init_params_from_job_description(cls, job_details: dict, model_channel_name: Optional[str] = None) -> dict:
        init_params = super()._prepare_init_params_from_job_description(job_details, model_channel_name)

        # 超参数名与属性名可能不同，例如 local_lloyd_init_method -> local_init_method
        for attribute, value in cls.__dict__.items():
            if isinstance(value, Hyperparameter) and value.name in init_params["hyperparameters"]:
                init_params[attribute] = init_params["hyperparameters"][value.name]

        del init_params["hyperparameters"]
        init_params.pop("image_uri", None)
        return init_params

    def _prepare_for_training(self, records, mini_batch_size: Optional[int] = None, job_name: Optional[str] = None):
        """
        从 train 通道获取 feature_dim

        Raises:
            ValueError: RecordSet 列表中没有 train 通道
        """
        super()._prepare_for_training(job_name=job_name)

        feature_dim = None
        if isinstance(records, list):
            for record in records:
                if record.channel == "train":
                    feature_dim = record.feature_dim
                    break
            if feature_dim is None:
                raise ValueError("Must provide train channel.")
        else:
            feature_dim = records.feature_dim

        self.feature_dim = feature_dim
        self.mini_batch_size = mini_batch_size

    def fit(
        self,
        records,
        mini_batch_size: Optional[int] = None,
        wait: bool = True,
        job_name: Optional[str] = None,
        experiment_config: Optional[dict] = None,
    ):
        """
        使用 RecordSet 训练

        Args:
            records: RecordSet / FileSystemRecordSet 或其列表
            mini_batch_size: 每个 mini-batch 的样本数
            wait: 是否等待完成
            job_name: 作业名称
            experiment_config: Experiment 配置

        Example:
            train = kmeans.record_set(train_array)
            kmeans.fit(train, mini_batch_size=500)
        """
        self._prepare_for_training(records, job_name=job_name, mini_batch_size=mini_batch_size)
        self.latest_training_job = self._start_new(records, experiment_config)
        if wait:
            self.wait()

    def record_set(self, train: np.ndarray, labels: Optional[np.ndarray] = None, channel: str = "train", encrypt: bool = False) -> "RecordSet":
        """
        把 numpy 矩阵上传为 RecordIO 分片，返回可用于 fit() 的 RecordSet

        分片数等于 instance_count，数据写在 data_location 下的
        {类名}-{时间戳}/ 目录中

        Args:
            train: 2 维特征矩阵
            labels: 1 维标签向量
            channel: 通道名
            encrypt: 是否使用 SSE (AES256) 加密
        """
        bucket, key_prefix = parse_s3_url(self.data_location)
        key_prefix = key_prefix + f"{type(self).__name__}-{sagemaker_timestamp()}/"
        key_prefix = key_prefix.lstrip("/")
        logger.debug("Uploading to bucket %s and key_prefix %s", bucket, key_prefix)

        manifest_s3_file = upload_numpy_to_s3_shards(
            self.instance_count,
            self.sagemaker_session.s3_client,
            bucket,
            key_prefix,
            train,
            labels,
            encrypt,
        )
        logger.debug("Created manifest file %s", manifest_s3_file)
        return RecordSet(
            manifest_s3_file,
            num_records=train.shape[0],
            feature_dim=train.shape[1],
            channel=channel,
        )


class RecordSet:
    """S3 上的 RecordIO 训练数据"""

    def __init__(
        self,
        s3_data: str,
        num_records: int,
        feature_dim: int,
        s3_data_type: str = "ManifestFile",
        channel: str = "train",
    ):
        """
        Args:
            s3_data: Manifest 文件或 S3 前缀
            num_records: 记录数
            feature_dim: 特征维度
            s3_data_type: ManifestFile / S3Prefix
            channel: 通道名
        """
        self.s3_data = s3_data
        self.feature_dim = feature_dim
        self.num_records = num_records
        self.s3_data_type = s3_data_type
        self.channel = channel

    def __repr__(self):
        return str((RecordSet, self.__dict__))

    def data_channel(self) -> dict:
        return {self.channel: self.records_s3_input()}

    def records_s3_input(self) -> TrainingInput:
        return TrainingInput(self.s3_data, distribution="ShardedByS3Key", s3_data_type=self.s3_data_type)


class FileSystemRecordSet:
    """EFS / FSx for Lustre 上的 RecordIO 训练数据"""

    def __init__(
        self,
        file_system_id: str,
        file_system_type: str,
        directory_path: str,
        num_records: int,
        feature_dim: int,
        file_system_access_mode: str = "ro",
        channel: str = "train",
    ):
        self.file_system_input = FileSystemInput(
            file_system_id, file_system_type, directory_path, file_system_access_mode
        )
        self.feature_dim = feature_dim
        self.num_records = num_records
        self.channel = channel

    def __repr__(self):
        return str((FileSystemRecordSet, self.__dict__))

    def data_channel(self) -> dict:
        return {self.channel: self.file_system_input}


def _build_shards(num_shards: int, array: np.ndarray) -> list:
    if num_shards < 1:
        raise ValueError("num_shards must be >= 1")
    shard_size = int(array.shape[0] / num_shards)
    if shard_size == 0:
        raise ValueError("Array length is less than num shards")
    shards = [array[i * shard_size : i * shard_size + shard_size] for i in range(num_shards - 1)]
    # 余数归入最后一个分片
    shards.append(array[(num_shards - 1) * shard_size :])
    return shards


def upload_numpy_to_s3_shards(
    num_shards: int,
    s3_client,
    bucket: str,
    key_prefix: str,
    array: np.ndarray,
    labels: Optional[np.ndarray] = None,
    encrypt: bool = False,
) -> str:
    """
    把 array（和 labels）切成 num_shards 个 RecordIO 文件上传到 s3://bucket/key_prefix/

    任一分片上传失败时删除已上传的分片并重新抛出异常

    Returns:
        Manifest 文件 URI
    """
    shards = _build_shards(num_shards, array)
    label_shards = _build_shards(num_shards, labels) if labels is not None else None

    if key_prefix[-1] != "/":
        key_prefix = key_prefix + "/"
    extra_put_kwargs = {"ServerSideEncryption": "AES256"} if encrypt else {}

    uploaded_files = []
    try:
        for shard_index, shard in enumerate(shards):
            with tempfile.TemporaryFile() as file:
                if label_shards is not None:
                    write_numpy_to_dense_tensor(file, shard, label_shards[shard_index])
                else:
                    write_numpy_to_dense_tensor(file, shard)
                file.seek(0)

                shard_index_string = str(shard_index).zfill(len(str(len(shards))))
                file_name = f"matrix_{shard_index_string}.pbr"
                key = key_prefix + file_name
                logger.debug("Creating object %s in bucket %s", key, bucket)
                s3_client.put_object(Bucket=bucket, Key=key, Body=file.read(), **extra_put_kwargs)
                uploaded_files.append(file_name)

        manifest_key = key_prefix + ".amazon.manifest"
        manifest_str = json.dumps([{"prefix": f"s3://{bucket}/{key_prefix}"}] + uploaded_files)
        s3_client.put_object(
            Bucket=bucket, Key=manifest_key, Body=manifest_str.encode("utf-8"), **extra_put_kwargs
        )
        return f"s3://{bucket}/{manifest_key}"
    except Exception:
        logger.error("Failed to upload record shards to s3://%s/%s, cleaning up", bucket, key_prefix)
        for file_name in uploaded_files:
            s3_client.delete_object(Bucket=bucket, Key=key_prefix + file_name)
        raise
