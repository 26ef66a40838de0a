# =============================================================================
# fw_utils.py - 框架 Estimator / Model 的公共工具
# =============================================================================
# 源码打包上传、镜像名解析、版本参数校验
# =============================================================================

import logging
import os
import re
import shutil
import tarfile
import tempfile
from collections import namedtuple
from typing import List, Optional

logger = logging.getLogger(__name__)

# 上传后的源码位置
UploadedCode = namedtuple("UploadedCode", ["s3_prefix", "script_name"])

# 官方框架镜像仓库名
_FRAMEWORK_IMAGE_PATTERN = re.compile(
    r"^(?:sagemaker-)?(tensorflow|pytorch|xgboost|scikit-learn|rl-ray-container)"
    r"(?:-(training|inference|inference-eia))?$"
)


def validate_source_dir(script: str, directory: Optional[str]) -> bool:
    """
    校验 entry_point 存在于 source_dir 中

    Raises:
        ValueError: 文件不存在
    """
    if directory:
        if not os.path.isfile(os.path.join(directory, script)):
            raise ValueError(f'No file named "{script}" was found in directory "{directory}".')
    return True


def tar_and_upload_dir(
    session,
    bucket: str,
    s3_key_prefix: str,
    script: str,
    directory: Optional[str] = None,
    dependencies: Optional[List[str]] = None,
    kms_key: Optional[str] = None,
) -> UploadedCode:
    """
    打包训练 / 推理脚本为 sourcedir.tar.gz 并上传到 S3

    Args:
        session: 带 s3_client 的 Session
        bucket: 目标 Bucket
        s3_key_prefix: 目标前缀
        script: 入口脚本（相对 directory 或本地路径）
        directory: 源码目录（为 s3:// 时直接使用，不上传）
        dependencies: 额外打包的本地目录或文件
        kms_key: S3 加密 KMS Key

    Returns:
        UploadedCode(s3_prefix, script_name)
    """
    if directory and directory.lower().startswith("s3://"):
        return UploadedCode(s3_prefix=directory, script_name=os.path.basename(script))

    script_name = script if directory else os.path.basename(script)
    dependencies = dependencies or []
    key = f"{s3_key_prefix}/sourcedir.tar.gz"
    tmp = tempfile.mkdtemp()

    try:
        source_files = _list_files_to_compress(script, directory) + dependencies
        tar_file = _create_tar_file(source_files, os.path.join(tmp, "sourcedir.tar.gz"))

        extra_args = {"ServerSideEncryption": "aws:kms"}
        if kms_key is not None:
            extra_args["SSEKMSKeyId"] = kms_key

        logger.info("Uploading source code to s3://%s/%s", bucket, key)
        session.s3_client.upload_file(tar_file, bucket, key, ExtraArgs=extra_args)
    finally:
        shutil.rmtree(tmp)

    return UploadedCode(s3_prefix=f"s3://{bucket}/{key}", script_name=script_name)


def _list_files_to_compress(script: str, directory: Optional[str]) -> List[str]:
    if directory is None:
        return [script]
    return [os.path.join(directory, name) for name in os.listdir(directory)]


def _create_tar_file(source_files: List[str], target: str) -> str:
    with tarfile.open(target, "w:gz") as t:
        for sf in source_files:
            t.add(sf, arcname=os.path.basename(sf))
    return target


def framework_name_from_image(image_uri: str):
    """
    从官方框架镜像 URI 提取 (framework, py_version, tag)

    不是官方框架镜像时返回 (None, None, None)

    Example:
        framework_name_from_image(
            "763104351884.dkr.ecr.us-west-2.amazonaws.com/pytorch-training:1.13.1-gpu-py39"
        )
        # -> ("pytorch", "py39", "1.13.1-gpu-py39")
    """
    sagemaker_pattern = re.compile(r"^(\d+)(\.)dkr(\.)ecr(\.)(.+)(\.)(.+)(\.)(.+)$")
    sagemaker_match = sagemaker_pattern.match(image_uri)
    if sagemaker_match is None:
        return None, None, None

    # repo:tag
    name_pattern = re.compile(r"^.+/([^:/]+):([^:/]+)$")
    name_match = name_pattern.match(image_uri)
    if name_match is None:
        return None, None, None

    repo, tag = name_match.group(1), name_match.group(2)
    framework_match = _FRAMEWORK_IMAGE_PATTERN.match(repo)
    if framework_match is None:
        return None, None, None

    framework = framework_match.group(1)
    if framework == "scikit-learn":
        framework = "sklearn"
    py_match = re.search(r"-(py\d+)(?:-|$)", tag)
    py_version = py_match.group(1) if py_match else None
    return framework, py_version, tag


def framework_version_from_tag(image_tag: str) -> Optional[str]:
    """
    从镜像 Tag 提取框架版本

    Example:
        framework_version_from_tag("1.13.1-gpu-py39")  # -> "1.13.1"
        framework_version_from_tag("1.7-1")            # -> "1.7-1"
    """
    tag_pattern = re.compile(r"^(\d+\.\d+(?:\.\d+)?(?:-\d+)?)(?:-(?:cpu|gpu|py\d+).*)?$")
    tag_match = tag_pattern.match(image_tag)
    return None if tag_match is None else tag_match.group(1)


def model_code_key_prefix(code_location_key_prefix: str, model_name: str, image: str) -> str:
    """推理代码的 S3 前缀，未指定模型名时由镜像名生成"""
    from .utils import base_name_from_image, name_from_base

    training_job_name = name_from_base(base_name_from_image(image))
    return "/".join(filter(None, [code_location_key_prefix, model_name or training_job_name]))


def validate_version_or_image_args(
    framework_version: Optional[str], py_version: Optional[str], image_uri: Optional[str]
):
    """
    Raises:
        ValueError: 未指定 image_uri 时 framework_version 或 py_version 缺失
    """
    if (framework_version is None or py_version is None) and image_uri is None:
        raise ValueError(
            "framework_version or py_version was None, yet image_uri was also None. "
            "Either specify both framework_version and py_version, or specify image_uri."
        )


def is_gpu_instance_type(instance_type: Optional[str]) -> bool:
    """ml.p* / ml.g* 以及 local_gpu 视为 GPU 实例"""
    if not instance_type:
        return False
    if instance_type.startswith("local"):
        return instance_type == "local_gpu"
    match = re.match(r"^ml[\._]([a-z\d]+)\.?\w*$", instance_type)
    return bool(match) and match[1][0] in ("g", "p")


def validate_not_gpu_instance_type(instance_type: Optional[str]):
    """
    Raises:
        ValueError: GPU 实例
    """
    if is_gpu_instance_type(instance_type):
        raise ValueError(
            f"GPU training is not supported for this framework. Please use a CPU instance type "
            f"instead of {instance_type}."
        )
