# =============================================================================
# s3.py - S3 路径解析和上传下载
# =============================================================================

import logging
from typing import List, Optional, Tuple
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


def parse_s3_url(url: str) -> Tuple[str, str]:
    """
    解析 S3 URI

    Args:
        url: s3://bucket/key 形式的路径

    Returns:
        (bucket, key)

    Raises:
        ValueError: 不是 s3:// 开头的路径
    """
    parsed_url = urlparse(url)
    if parsed_url.scheme != "s3":
        raise ValueError(f"Expecting 's3' scheme, got: {parsed_url.scheme} in {url}.")
    return parsed_url.netloc, parsed_url.path.lstrip("/")


def s3_path_join(*args: str) -> str:
    """
    拼接 S3 路径，保留 s3:// 前缀并去掉多余的 /

    Example:
        s3_path_join("s3://bucket/", "/prefix/", "model.tar.gz")
        # -> "s3://bucket/prefix/model.tar.gz"
    """
    parts = [str(arg) for arg in args if arg]
    if not parts:
        return ""

    prefix = ""
    if parts[0].startswith("s3://"):
        prefix = "s3://"
        parts[0] = parts[0][len("s3://") :]

    return prefix + "/".join(part.strip("/") for part in parts if part.strip("/"))


def _default_session(sagemaker_session):
    if sagemaker_session is not None:
        return sagemaker_session
    from .session import Session

    return Session()


class S3Uploader:
    """上传本地文件或字符串到 S3"""

    @staticmethod
    def upload(
        local_path: str,
        desired_s3_uri: str,
        kms_key: Optional[str] = None,
        sagemaker_session=None,
    ) -> str:
        """
        上传本地文件或目录

        Returns:
            上传后的 S3 URI
        """
        session = _default_session(sagemaker_session)
        bucket, key_prefix = parse_s3_url(desired_s3_uri)
        extra_args = {"SSEKMSKeyId": kms_key, "ServerSideEncryption": "aws:kms"} if kms_key else None
        return session.upload_data(
            path=local_path, bucket=bucket, key_prefix=key_prefix, extra_args=extra_args
        )

    @staticmethod
    def upload_string_as_file_body(
        body: str,
        desired_s3_uri: str,
        kms_key: Optional[str] = None,
        sagemaker_session=None,
    ) -> str:
        """上传字符串作为 S3 对象内容"""
        session = _default_session(sagemaker_session)
        bucket, key = parse_s3_url(desired_s3_uri)
        return session.upload_string_as_file_body(body=body, bucket=bucket, key=key, kms_key=kms_key)


class S3Downloader:
    """从 S3 下载文件或读取内容"""

    @staticmethod
    def download(
        s3_uri: str,
        local_path: str,
        kms_key: Optional[str] = None,
        sagemaker_session=None,
    ) -> List[str]:
        """下载单个对象或整个前缀到本地目录"""
        session = _default_session(sagemaker_session)
        bucket, key_prefix = parse_s3_url(s3_uri)
        extra_args = {"SSECustomerKey": kms_key} if kms_key else None
        return session.download_data(
            path=local_path, bucket=bucket, key_prefix=key_prefix, extra_args=extra_args
        )

    @staticmethod
    def read_file(s3_uri: str, sagemaker_session=None) -> str:
        """读取 S3 对象内容（UTF-8）"""
        session = _default_session(sagemaker_session)
        bucket, key = parse_s3_url(s3_uri)
        return session.read_s3_file(bucket, key)

    @staticmethod
    def list(s3_uri: str, sagemaker_session=None) -> List[str]:
        """列出前缀下的所有对象 URI"""
        session = _default_session(sagemaker_session)
        bucket, key_prefix = parse_s3_url(s3_uri)
        return [f"s3://{bucket}/{key}" for key in session.list_s3_files(bucket, key_prefix)]

