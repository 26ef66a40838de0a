# =============================================================================
# inputs.py - 训练数据通道定义
# =============================================================================
# TrainingInput (S3) / FileSystemInput (EFS, FSx for Lustre) 生成
# CreateTrainingJob 的 InputDataConfig 通道
# =============================================================================

from typing import List, Optional

FILE_SYSTEM_TYPES = ["FSxLustre", "EFS"]
FILE_SYSTEM_ACCESS_MODES = ["ro", "rw"]


class TrainingInput:
    """
    S3 训练数据通道

    Example:
        train = TrainingInput("s3://bucket/train/", content_type="text/csv")
        estimator.fit({"train": train})
    """

    def __init__(
        self,
        s3_data: str,
        distribution: Optional[str] = None,
        compression: Optional[str] = None,
        content_type: Optional[str] = None,
        record_wrapping: Optional[str] = None,
        s3_data_type: str = "S3Prefix",
        input_mode: Optional[str] = None,
        attribute_names: Optional[List[str]] = None,
        target_attribute_name: Optional[str] = None,
        shuffle_config: Optional["ShuffleConfig"] = None,
    ):
        """
        Args:
            s3_data: S3 前缀、Manifest 文件或增强 Manifest 文件的 URI
            distribution: FullyReplicated / ShardedByS3Key
            compression: 压缩格式（Gzip）
            content_type: 数据的 MIME 类型
            record_wrapping: RecordIO 时设置为 "RecordIO"
            s3_data_type: S3Prefix / ManifestFile / AugmentedManifestFile
            input_mode: 覆盖 Estimator 的输入模式（File / Pipe / FastFile）
            attribute_names: 增强 Manifest 中使用的属性
            target_attribute_name: AutoML 目标列
            shuffle_config: Pipe 模式下的数据打乱配置
        """
        self.config = {
            "DataSource": {"S3DataSource": {"S3DataType": s3_data_type, "S3Uri": s3_data}}
        }

        if not (target_attribute_name or distribution):
            distribution = "FullyReplicated"

        if distribution is not None:
            self.config["DataSource"]["S3DataSource"]["S3DataDistributionType"] = distribution

        if compression is not None:
            self.config["CompressionType"] = compression
        if content_type is not None:
            self.config["ContentType"] = content_type
        if record_wrapping is not None:
            self.config["RecordWrapperType"] = record_wrapping
        if input_mode is not None:
            self.config["InputMode"] = input_mode
        if attribute_names is not None:
            self.config["DataSource"]["S3DataSource"]["AttributeNames"] = attribute_names
        if target_attribute_name is not None:
            self.config["TargetAttributeName"] = target_attribute_name
        if shuffle_config is not None:
            self.config["ShuffleConfig"] = {"Seed": shuffle_config.seed}


class FileSystemInput:
    """EFS / FSx for Lustre 训练数据通道"""

    def __init__(
        self,
        file_system_id: str,
        file_system_type: str,
        directory_path: str,
        file_system_access_mode: str = "ro",
        content_type: Optional[str] = None,
    ):
        """
        Raises:
            ValueError: 文件系统类型或访问模式不受支持
        """
        if file_system_type not in FILE_SYSTEM_TYPES:
            raise ValueError(
                f"Unrecognized file system type: {file_system_type}. "
                f"Valid values: {', '.join(FILE_SYSTEM_TYPES)}."
            )

        if file_system_access_mode not in FILE_SYSTEM_ACCESS_MODES:
            raise ValueError(
                f"Unrecognized file system access mode: {file_system_access_mode}. "
                f"Valid values: {', '.join(FILE_SYSTEM_ACCESS_MODES)}."
            )

        self.config = {
            "DataSource": {
                "FileSystemDataSource": {
                    "FileSystemId": file_system_id,
                    "FileSystemType": file_system_type,
                    "DirectoryPath": directory_path,
                    "FileSystemAccessMode": file_system_access_mode,
                }
            }
        }

        if content_type:
            self.config["ContentType"] = content_type


class ShuffleConfig:
    """Pipe 模式下的数据打乱种子"""

    def __init__(self, seed: int):
        self.seed = seed
