# =============================================================================
# config.py - 配置管理和自动发现
# =============================================================================
# 从参数、环境变量、SageMaker Studio Domain/User Profile 获取
# Region、执行角色、默认 Bucket、VPC 配置和默认 Tags
# =============================================================================

import json
import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

import boto3

logger = logging.getLogger(__name__)

STUDIO_PROJECT_CONFIG = ".sagemaker-code-config"


@dataclass
class SessionConfig:
    """Session 配置类"""

    # 基础信息
    region: str
    account_id: str

    # Role 配置
    role_arn: Optional[str] = None

    # S3 配置
    bucket: Optional[str] = None
    bucket_prefix: str = ""

    # VPC 配置
    subnet_ids: List[str] = field(default_factory=list)
    security_group_ids: List[str] = field(default_factory=list)

    # 可选配置
    tags: Dict[str, str] = field(default_factory=dict)

    def get_vpc_config(self) -> Optional[dict]:
        """获取 VPC 配置（用于 CreateTrainingJob / CreateModel），未配置子网时返回 None"""
        if not self.subnet_ids:
            return None
        return {
            "Subnets": self.subnet_ids,
            "SecurityGroupIds": self.security_group_ids,
        }

    def get_default_tags(self) -> List[dict]:
        """获取默认 Tags"""
        return [{"Key": k, "Value": v} for k, v in self.tags.items()]


# =============================================================================
# 配置自动发现
# =============================================================================


def _get_env_list(key: str) -> List[str]:
    """读取逗号分隔的环境变量"""
    value = os.environ.get(key, "")
    return [item.strip() for item in value.split(",") if item.strip()]


def _get_env_tags(key: str) -> Dict[str, str]:
    """读取 k=v,k=v 形式的 Tags 环境变量"""
    tags = {}
    for item in _get_env_list(key):
        if "=" not in item:
            raise ValueError(f"Invalid tag '{item}' in {key}, expecting key=value")
        k, v = item.split("=", 1)
        tags[k.strip()] = v.strip()
    return tags


@lru_cache(maxsize=1)
def _get_account_id() -> str:
    """获取当前 AWS Account ID"""
    sts = boto3.client("sts")
    return sts.get_caller_identity()["Account"]


@lru_cache(maxsize=1)
def _get_region() -> str:
    """获取当前 AWS Region"""
    session = boto3.session.Session()
    region = (
        session.region_name
        or os.environ.get("AWS_REGION")
        or os.environ.get("AWS_DEFAULT_REGION")
    )
    if not region:
        raise ValueError(
            "Must setup local AWS configuration with a region supported by SageMaker."
        )
    return region


def _discover_from_domain(region: str) -> dict:
    """
    从 SageMaker Domain 发现 VPC 配置
    在 Studio 环境中运行时可自动获取
    """
    try:
        sm = boto3.client("sagemaker", region_name=region)

        domain_id = os.environ.get("DOMAIN_ID")
        if not domain_id:
            response = sm.list_domains(MaxResults=1)
            if response.get("Domains"):
                domain_id = response["Domains"][0]["DomainId"]

        if not domain_id:
            return {}

        domain = sm.describe_domain(DomainId=domain_id)
        default_settings = domain.get("DefaultUserSettings", {})

        return {
            "subnet_ids": domain.get("SubnetIds", []),
            "security_group_ids": default_settings.get("SecurityGroups", []),
            "role_arn": default_settings.get("ExecutionRole"),
        }
    except Exception as e:
        logger.debug("Could not discover SageMaker domain settings: %s", e)
        return {}


def _discover_from_user_profile(region: str) -> dict:
    """
    从当前 User Profile 发现执行角色
    """
    user_profile_name = os.environ.get("USER_PROFILE_NAME", "")
    domain_id = os.environ.get("DOMAIN_ID", "")
    if not user_profile_name or not domain_id:
        return {}

    try:
        sm = boto3.client("sagemaker", region_name=region)
        profile = sm.describe_user_profile(
            DomainId=domain_id, UserProfileName=user_profile_name
        )
        return {"role_arn": profile.get("UserSettings", {}).get("ExecutionRole")}
    except Exception as e:
        logger.debug("Could not discover SageMaker user profile settings: %s", e)
        return {}


# =============================================================================
# Studio 项目 Tags
# =============================================================================


def _find_project_config(working_dir: Optional[str] = None) -> Optional[Path]:
    """从工作目录向上查找 Studio 项目配置文件"""
    wd = Path(working_dir or os.getcwd()).resolve()
    for directory in [wd, *wd.parents]:
        candidate = directory / STUDIO_PROJECT_CONFIG
        if candidate.is_file():
            return candidate
    return None


def _load_project_config(path: Path) -> Optional[dict]:
    try:
        with open(path) as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.debug("Could not load project config %s: %s", path, e)
        return None


def append_project_tags(tags: List[dict] = None, working_dir: str = None) -> Optional[List[dict]]:
    """
    追加 SageMaker Studio 项目 Tags

    Args:
        tags: 已有 Tags 列表
        working_dir: 查找起点（默认当前工作目录）

    Returns:
        追加了 sagemaker:project-id / sagemaker:project-name 的 Tags 列表
    """
    path = _find_project_config(working_dir)
    if path is None:
        return tags

    config = _load_project_config(path)
    if not config:
        return tags

    additional_tags = []
    if config.get("sagemakerProjectId"):
        additional_tags.append({"Key": "sagemaker:project-id", "Value": config["sagemakerProjectId"]})
    if config.get("sagemakerProjectName"):
        additional_tags.append(
            {"Key": "sagemaker:project-name", "Value": config["sagemakerProjectName"]}
        )
    existing_keys = {t["Key"] for t in tags or []}
    additional_tags = [t for t in additional_tags if t["Key"] not in existing_keys]
    if not additional_tags:
        return tags

    return list(tags or []) + additional_tags


@lru_cache(maxsize=1)
def get_config(
    region: Optional[str] = None,
    role_arn: Optional[str] = None,
    bucket: Optional[str] = None,
    discover: bool = True,
) -> SessionConfig:
    """
    获取 Session 配置（自动发现 + 环境变量 + 参数覆盖）

    优先级: 参数 > 环境变量 > 自动发现

    Args:
        region: AWS Region（覆盖环境变量）
        role_arn: SageMaker 执行角色 ARN（覆盖环境变量）
        bucket: 默认 S3 Bucket（覆盖环境变量）
        discover: 是否从 SageMaker Domain / User Profile 自动发现

    Returns:
        SessionConfig 实例

    Example:
        config = get_config()
        # 或指定参数
        config = get_config(region="us-west-2", role_arn="arn:aws:iam::111122223333:role/SageMakerRole")
    """
    # 1. 基础信息
    _region = region or _get_region()
    _account_id = _get_account_id()

    # 2. 自动发现
    domain_config = _discover_from_domain(_region) if discover else {}
    profile_config = _discover_from_user_profile(_region) if discover else {}

    # 3. 执行角色
    _role_arn = (
        role_arn
        or os.environ.get("SAGEMAKER_ROLE")
        or profile_config.get("role_arn")
        or domain_config.get("role_arn")
    )

    # 4. VPC 配置
    _subnet_ids = _get_env_list("SAGEMAKER_SUBNET_IDS") or domain_config.get("subnet_ids", [])
    _sg_ids = _get_env_list("SAGEMAKER_SECURITY_GROUP_IDS") or domain_config.get(
        "security_group_ids", []
    )
    if _subnet_ids and not _sg_ids:
        raise ValueError("No security group IDs found. Set SAGEMAKER_SECURITY_GROUP_IDS")

    return SessionConfig(
        region=_region,
        account_id=_account_id,
        role_arn=_role_arn,
        bucket=bucket or os.environ.get("SAGEMAKER_BUCKET"),
        bucket_prefix=os.environ.get("SAGEMAKER_BUCKET_PREFIX", "").strip("/"),
        subnet_ids=_subnet_ids,
        security_group_ids=_sg_ids,
        tags=_get_env_tags("SAGEMAKER_TAGS"),
    )


def print_config(config: SessionConfig = None):
    """打印当前配置（调试用）"""
    if config is None:
        config = get_config()

    print("=" * 60)
    print(" SageMaker Session Configuration")
    print("=" * 60)
    print(f"  Region:         {config.region}")
    print(f"  Account ID:     {config.account_id}")
    print(f"  Role:           {config.role_arn}")
    print()
    print("  VPC Configuration:")
    print(f"    Subnets:      {config.subnet_ids}")
    print(f"    Security Groups: {config.security_group_ids}")
    print()
    print(f"  S3 Bucket:      {config.bucket}")
    print(f"  S3 Prefix:      {config.bucket_prefix}")
    print(f"  Tags:           {config.tags}")
    print("=" * 60)
