# =============================================================================
# vpc_utils.py - VpcConfig 工具函数
# =============================================================================

from typing import List, Optional, Tuple

SUBNETS_KEY = "Subnets"
SECURITY_GROUP_IDS_KEY = "SecurityGroupIds"
VPC_CONFIG_KEY = "VpcConfig"

# 表示"使用当前配置"的哨兵值
VPC_CONFIG_DEFAULT = "VPC_CONFIG_DEFAULT"


def to_dict(subnets: Optional[List[str]], security_group_ids: Optional[List[str]]) -> Optional[dict]:
    """子网和安全组都存在时返回 VpcConfig 字典，否则返回 None"""
    if subnets is None or security_group_ids is None:
        return None
    return {SUBNETS_KEY: subnets, SECURITY_GROUP_IDS_KEY: security_group_ids}


def from_dict(
    vpc_config: Optional[dict], do_sanitize: bool = False
) -> Tuple[Optional[List[str]], Optional[List[str]]]:
    """从 VpcConfig 字典中提取 (subnets, security_group_ids)"""
    if do_sanitize:
        vpc_config = sanitize(vpc_config)
    if vpc_config is None:
        return None, None
    return vpc_config[SUBNETS_KEY], vpc_config[SECURITY_GROUP_IDS_KEY]


def sanitize(vpc_config: Optional[dict]) -> Optional[dict]:
    """
    校验 VpcConfig 并去掉多余的键

    Raises:
        ValueError: 缺少 Subnets / SecurityGroupIds，或者它们不是非空列表
    """
    if vpc_config is None:
        return vpc_config
    if not isinstance(vpc_config, dict):
        raise ValueError(f"vpc_config is not a dict: {vpc_config}")
    if not vpc_config:
        raise ValueError(f"vpc_config is empty: {vpc_config}")

    subnets = vpc_config.get(SUBNETS_KEY)
    if subnets is None:
        raise ValueError(f"vpc_config is missing key: {SUBNETS_KEY}")
    if not isinstance(subnets, list):
        raise ValueError(f"vpc_config value for {SUBNETS_KEY} is not a list: {subnets}")
    if not subnets:
        raise ValueError(f"vpc_config value for {SUBNETS_KEY} is empty: {subnets}")

    security_group_ids = vpc_config.get(SECURITY_GROUP_IDS_KEY)
    if security_group_ids is None:
        raise ValueError(f"vpc_config is missing key: {SECURITY_GROUP_IDS_KEY}")
    if not isinstance(security_group_ids, list):
        raise ValueError(
            f"vpc_config value for {SECURITY_GROUP_IDS_KEY} is not a list: {security_group_ids}"
        )
    if not security_group_ids:
        raise ValueError(
            f"vpc_config value for {SECURITY_GROUP_IDS_KEY} is empty: {security_group_ids}"
        )

    return to_dict(subnets, security_group_ids)
