# =============================================================================
# image_uris.py - 容器镜像 URI 解析
# =============================================================================
# 根据框架、版本、Region、实例类型解析 SageMaker 预置镜像的 ECR URI，
# 以及查询自定义 ECR 仓库中的镜像
# =============================================================================

import json
import logging
import os
import re
from typing import Dict, List, Optional

import boto3

logger = logging.getLogger(__name__)

ECR_URI_TEMPLATE = "{registry}.dkr.{hostname}/{repository}"

# 自定义 ECR 仓库缓存
_ecr_repositories_cache: Optional[List[dict]] = None


def retrieve(
    framework: str,
    region: Optional[str] = None,
    version: Optional[str] = None,
    py_version: Optional[str] = None,
    instance_type: Optional[str] = None,
    accelerator_type: Optional[str] = None,
    image_scope: Optional[str] = None,
    container_version: Optional[str] = None,
) -> str:
    """
    获取 SageMaker 预置镜像的 ECR URI

    Args:
        framework: 框架或算法名称（例如 xgboost, sklearn, pytorch, kmeans）
        region: AWS Region（默认当前 boto3 Region）
        version: 框架版本或别名
        py_version: Python 版本（例如 py3）
        instance_type: 实例类型，用于选择 cpu / gpu 等处理器
        accelerator_type: Elastic Inference 加速器类型
        image_scope: training / inference / eia
        container_version: 容器版本后缀

    Returns:
        镜像 URI

    Raises:
        ValueError: 框架、版本、Region、处理器等参数不受支持

    Example:
        retrieve("xgboost", region="us-west-2", version="1.7-1")
        # -> "246618743249.dkr.ecr.us-west-2.amazonaws.com/sagemaker-xgboost:1.7-1"
    """
    if region is None:
        region = boto3.session.Session().region_name
        if region is None:
            raise ValueError("Must specify a region or configure a default AWS region.")

    config = _config_for_framework_and_scope(framework, image_scope, accelerator_type)

    version = _validate_version_and_set_if_needed(version, config, framework)
    version_config = config["versions"][_version_for_config(version, config)]

    py_version = _validate_py_version_and_set_if_needed(py_version, version_config, framework)
    version_config = version_config.get(py_version) or version_config

    registry = _registry_from_region(region, version_config["registries"])
    hostname = _ecr_hostname(region)

    repo = version_config["repository"]

    processor = _processor(
        instance_type, config.get("processors") or version_config.get("processors")
    )

    if container_version is None and version_config.get("container_version"):
        container_version = version_config["container_version"].get(processor)

    tag_prefix = version_config.get("tag_prefix", version)
    tag = _format_tag(tag_prefix, processor, py_version, container_version)

    if tag:
        repo += f":{tag}"

    return ECR_URI_TEMPLATE.format(registry=registry, hostname=hostname, repository=repo)


def config_for_framework(framework: str) -> dict:
    """
    读取框架的镜像配置 JSON

    Raises:
        ValueError: 不支持的框架
    """
    fname = os.path.join(os.path.dirname(__file__), "image_uri_config", f"{framework}.json")
    if not os.path.exists(fname):
        raise ValueError(f"Unsupported framework: {framework}")
    with open(fname) as f:
        return json.load(f)


def _config_for_framework_and_scope(
    framework: str, image_scope: Optional[str], accelerator_type: Optional[str] = None
) -> dict:
    config = config_for_framework(framework)

    if accelerator_type:
        _validate_accelerator_type(accelerator_type)

        if image_scope not in ("eia", "inference"):
            logger.warning(
                "Elastic inference is for inference only. Ignoring image scope: %s.", image_scope
            )
        image_scope = "eia"

    available_scopes = config.get("scope", config.keys())

    if len(available_scopes) == 1:
        if image_scope and image_scope != list(available_scopes)[0]:
            logger.warning(
                "Defaulting to only supported image scope: %s. Ignoring image scope: %s.",
                list(available_scopes)[0],
                image_scope,
            )
        image_scope = list(available_scopes)[0]

    if not image_scope and "scope" in config and set(available_scopes) == {"training", "inference"}:
        logger.info(
            "Same images used for training and inference. Defaulting to image scope: %s.",
            available_scopes[0],
        )
        image_scope = available_scopes[0]

    _validate_arg(image_scope, available_scopes, "image scope")
    return config if "scope" in config else config[image_scope]


def _validate_accelerator_type(accelerator_type: str):
    if not accelerator_type.startswith("ml.eia") and accelerator_type != "local_sagemaker_notebook":
        raise ValueError(
            f"Invalid SageMaker Elastic Inference accelerator type: {accelerator_type}. "
            "See: https://docs.aws.amazon.com/sagemaker/latest/dg/ei.html"
        )


def _validate_version_and_set_if_needed(version: Optional[str], config: dict, framework: str) -> str:
    available_versions = list(config["versions"].keys())
    aliased_versions = list(config.get("version_aliases", {}).keys())

    if len(available_versions) == 1 and version not in aliased_versions:
        log_message = f"Defaulting to the only supported framework/algorithm version: {available_versions[0]}."
        if version and version != available_versions[0]:
            logger.warning("%s Ignoring framework/algorithm version: %s.", log_message, version)
        elif not version:
            logger.info(log_message)
        return available_versions[0]

    _validate_arg(version, available_versions + aliased_versions, f"{framework} version")
    return version


def _version_for_config(version: str, config: dict) -> str:
    """别名转换为配置中的实际版本"""
    if "version_aliases" in config:
        if version in config["version_aliases"].keys():
            return config["version_aliases"][version]
    return version


def _validate_py_version_and_set_if_needed(
    py_version: Optional[str], version_config: dict, framework: str
) -> Optional[str]:
    if "repository" in version_config:
        available_versions = version_config.get("py_versions")
    else:
        available_versions = list(version_config.keys())

    if not available_versions:
        if py_version:
            logger.info("py_version %s is ignored for %s.", py_version, framework)
        return None

    if py_version is None and len(available_versions) == 1:
        logger.info("Defaulting to only available Python version: %s", available_versions[0])
        return available_versions[0]

    _validate_arg(py_version, available_versions, "Python version")
    return py_version


def _registry_from_region(region: str, registry_dict: Dict[str, str]) -> str:
    _validate_arg(region, registry_dict.keys(), "region")
    return registry_dict[region]


def _ecr_hostname(region: str) -> str:
    """ECR 域名，中国区 / 隔离区使用不同的 DNS 后缀"""
    if region.startswith("cn-"):
        dns_suffix = "amazonaws.com.cn"
    elif region.startswith("us-isob-"):
        dns_suffix = "sc2s.sgov.gov"
    elif region.startswith("us-iso-"):
        dns_suffix = "c2s.ic.gov"
    else:
        dns_suffix = "amazonaws.com"
    return f"ecr.{region}.{dns_suffix}"


def _processor(instance_type: Optional[str], available_processors: Optional[List[str]]) -> Optional[str]:
    """根据实例类型选择 cpu / gpu / inf / trn 等处理器"""
    if not available_processors:
        if instance_type:
            logger.info("Ignoring unnecessary instance type: %s.", instance_type)
        return None

    if len(available_processors) == 1 and not instance_type:
        logger.info("Defaulting to only supported image processor: %s", available_processors[0])
        return available_processors[0]

    if not instance_type:
        raise ValueError(
            "Empty SageMaker instance type. For options, see: "
            "https://aws.amazon.com/sagemaker/pricing/instance-types"
        )

    if instance_type.startswith("local"):
        processor = "cpu" if instance_type == "local" else "gpu"
    else:
        # ml.<family>.<size>，例如 ml.g4dn.xlarge -> g4dn
        match = re.match(r"^ml[\._]([a-z\d]+)\.?\w*$", instance_type)
        if match:
            family = match[1]
            if family in available_processors:
                processor = family
            elif family.startswith("inf"):
                processor = "inf"
            elif family.startswith("trn"):
                processor = "trn"
            elif family[0] in ("g", "p"):
                processor = "gpu"
            else:
                processor = "cpu"
        else:
            raise ValueError(
                f"Invalid SageMaker instance type: {instance_type}. For options, see: "
                "https://aws.amazon.com/sagemaker/pricing/instance-types"
            )

    _validate_arg(processor, available_processors, "processor")
    return processor


def _format_tag(
    tag_prefix: Optional[str],
    processor: Optional[str],
    py_version: Optional[str],
    container_version: Optional[str],
) -> str:
    return "-".join(x for x in (tag_prefix, processor, py_version, container_version) if x)


def _validate_arg(arg, available_options, arg_name: str):
    if arg is None or arg not in available_options:
        raise ValueError(
            f"Unsupported {arg_name}: {arg}. You may need to upgrade your SDK version "
            f"for newer {arg_name}s. Supported {arg_name}(s): {', '.join(available_options)}."
        )


# =============================================================================
# 自定义 ECR 镜像
# =============================================================================


def list_ecr_repositories(force_refresh: bool = False, boto_session=None) -> List[dict]:
    """
    列出当前账号的 ECR 仓库（结果缓存）

    Args:
        force_refresh: 忽略缓存重新查询
        boto_session: boto3 Session（默认新建）

    Returns:
        仓库信息列表，包含 repositoryName / repositoryUri
    """
    global _ecr_repositories_cache
    if _ecr_repositories_cache is not None and not force_refresh:
        return _ecr_repositories_cache

    ecr = (boto_session or boto3.session.Session()).client("ecr")
    repositories = []
    paginator = ecr.get_paginator("describe_repositories")
    for page in paginator.paginate():
        repositories.extend(page.get("repositories", []))

    _ecr_repositories_cache = repositories
    logger.debug("Found %d ECR repositories", len(repositories))
    return repositories


def ecr_tags(repo_name: str, boto_session=None) -> List[str]:
    """列出仓库中的镜像 Tag，按推送时间从新到旧排序"""
    ecr = (boto_session or boto3.session.Session()).client("ecr")
    images = []
    paginator = ecr.get_paginator("describe_images")
    for page in paginator.paginate(repositoryName=repo_name, filter={"tagStatus": "TAGGED"}):
        images.extend(page.get("imageDetails", []))

    images.sort(key=lambda x: x["imagePushedAt"], reverse=True)
    return [tag for image in images for tag in image.get("imageTags", [])]


def retrieve_ecr_uri(repo_name: str, tag: Optional[str] = None, boto_session=None) -> str:
    """
    获取自定义 ECR 镜像 URI

    Args:
        repo_name: 仓库名称
        tag: 镜像 Tag（默认最新推送的 Tag）

    Raises:
        ValueError: 仓库或 Tag 不存在

    Example:
        retrieve_ecr_uri("my-inference-image")
        # -> "111122223333.dkr.ecr.us-west-2.amazonaws.com/my-inference-image:v3"
    """
    repositories = list_ecr_repositories(boto_session=boto_session)
    repo = next((r for r in repositories if r["repositoryName"] == repo_name), None)
    if repo is None:
        repositories = list_ecr_repositories(force_refresh=True, boto_session=boto_session)
        repo = next((r for r in repositories if r["repositoryName"] == repo_name), None)
    if repo is None:
        raise ValueError(f"ECR repository not found: {repo_name}")

    tags = ecr_tags(repo_name, boto_session=boto_session)
    if not tags:
        raise ValueError(f"No tagged images in ECR repository: {repo_name}")

    if tag is None:
        tag = tags[0]
    elif tag not in tags:
        raise ValueError(f"Tag {tag} not found in ECR repository {repo_name}: {', '.join(tags)}")

    return f"{repo['repositoryUri']}:{tag}"
