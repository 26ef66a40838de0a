# =============================================================================
# job.py - 训练作业请求组装
# =============================================================================
# 把 Estimator 的参数和 fit() 的输入转换成 CreateTrainingJob 的各个配置块
# =============================================================================

from typing import Optional

from .inputs import FileSystemInput, TrainingInput

MODEL_CONTENT_TYPE = "application/x-sagemaker-model"


def load_config(inputs, estimator, expand_role: bool = True, validate_uri: bool = True) -> dict:
    """
    从 Estimator 组装训练作业配置

    Returns:
        包含 input_config / role / output_config / resource_config /
        stop_condition / vpc_config 的字典
    """
    input_config = format_inputs_to_input_config(inputs, validate_uri)
    role = (
        estimator.sagemaker_session.expand_role(estimator.role)
        if expand_role
        else estimator.role
    )
    output_config = prepare_output_config(estimator.output_path, estimator.output_kms_key)
    resource_config = prepare_resource_config(
        estimator.instance_count,
        estimator.instance_type,
        estimator.volume_size,
        estimator.volume_kms_key,
    )
    stop_condition = prepare_stop_condition(estimator.max_run, estimator.max_wait)
    vpc_config = estimator.get_vpc_config()

    model_channel = format_model_uri_input(estimator.model_uri, validate_uri)
    if model_channel:
        input_config = [] if input_config is None else input_config
        input_config.append(_convert_input_to_channel(estimator.model_channel_name, model_channel))

    return {
        "input_config": input_config,
        "role": role,
        "output_config": output_config,
        "resource_config": resource_config,
        "stop_condition": stop_condition,
        "vpc_config": vpc_config,
    }


def format_inputs_to_input_config(inputs, validate_uri: bool = True):
    """
    把 fit() 的输入转换成 InputDataConfig 通道列表

    支持: S3 / file URI 字符串、TrainingInput、FileSystemInput、RecordSet、
    FileSystemRecordSet、RecordSet 列表，以及 {通道名: 上述任一} 字典

    Raises:
        ValueError: 不支持的输入类型
    """
    from .amazon_estimator import FileSystemRecordSet, RecordSet

    if inputs is None:
        return None

    input_dict = {}
    if isinstance(inputs, str):
        input_dict["training"] = _format_string_uri_input(inputs, validate_uri)
    elif isinstance(inputs, (TrainingInput, FileSystemInput)):
        input_dict["training"] = inputs
    elif isinstance(inputs, (RecordSet, FileSystemRecordSet)):
        input_dict = inputs.data_channel()
    elif isinstance(inputs, list):
        for record in inputs:
            if not isinstance(record, (RecordSet, FileSystemRecordSet)):
                raise ValueError("List of inputs must contain only RecordSet objects")
            input_dict.update(record.data_channel())
    elif isinstance(inputs, dict):
        for k, v in inputs.items():
            input_dict[k] = _format_string_uri_input(v, validate_uri)
    else:
        msg = (
            "Cannot format input {}. Expecting one of str, dict, TrainingInput, "
            "FileSystemInput, RecordSet or list of RecordSet"
        )
        raise ValueError(msg.format(inputs))

    channels = [_convert_input_to_channel(name, channel_input) for name, channel_input in input_dict.items()]
    return channels


def _convert_input_to_channel(channel_name: str, channel_s3_input) -> dict:
    channel_config = channel_s3_input.config.copy()
    channel_config["ChannelName"] = channel_name
    return channel_config


class _FileUriInput:
    """本地 file:// 通道（本地模式）"""

    def __init__(self, file_uri: str, content_type: Optional[str] = None):
        self.config = {"DataSource": {"FileDataSource": {"FileUri": file_uri}}}
        if content_type is not None:
            self.config["ContentType"] = content_type


def _format_string_uri_input(uri_input, validate_uri: bool = True, content_type: Optional[str] = None):
    from .amazon_estimator import FileSystemRecordSet, RecordSet

    if isinstance(uri_input, str) and validate_uri and uri_input.startswith("s3://"):
        return TrainingInput(uri_input, content_type=content_type)
    if isinstance(uri_input, str) and validate_uri and uri_input.startswith("file://"):
        return _FileUriInput(uri_input, content_type=content_type)
    if isinstance(uri_input, str) and validate_uri:
        raise ValueError(
            f'URI input {uri_input} must be a valid S3 or FILE URI: must start with "s3://" or "file://"'
        )
    if isinstance(uri_input, str):
        return TrainingInput(uri_input, content_type=content_type)
    if isinstance(uri_input, (TrainingInput, FileSystemInput, _FileUriInput)):
        return uri_input
    if isinstance(uri_input, (RecordSet, FileSystemRecordSet)):
        return next(iter(uri_input.data_channel().values()))

    raise ValueError(
        f"Cannot format input {uri_input}. Expecting one of str, TrainingInput or FileSystemInput"
    )


def format_model_uri_input(model_uri: Optional[str], validate_uri: bool = True):
    """
    把预训练模型 URI 转换成 model 通道

    Raises:
        ValueError: 不是 s3:// 或 file:// URI
    """
    if model_uri is None:
        return None
    if isinstance(model_uri, str) and validate_uri and model_uri.startswith("s3://"):
        return TrainingInput(
            model_uri,
            input_mode="File",
            distribution="FullyReplicated",
            content_type=MODEL_CONTENT_TYPE,
        )
    if isinstance(model_uri, str) and validate_uri and model_uri.startswith("file://"):
        return _FileUriInput(model_uri)
    if isinstance(model_uri, str) and validate_uri:
        raise ValueError(
            'Model URI must be a valid S3 or FILE URI: must start with "s3://" or "file://"'
        )
    if isinstance(model_uri, str):
        return TrainingInput(model_uri, input_mode="File", distribution="FullyReplicated")
    raise ValueError("Cannot format model URI {}. Expecting str".format(model_uri))


def prepare_output_config(s3_path: str, kms_key_id: Optional[str] = None) -> dict:
    config = {"S3OutputPath": s3_path}
    if kms_key_id is not None:
        config["KmsKeyId"] = kms_key_id
    return config


def prepare_resource_config(
    instance_count: int,
    instance_type: str,
    volume_size: int,
    volume_kms_key: Optional[str] = None,
) -> dict:
    resource_config = {
        "InstanceCount": instance_count,
        "InstanceType": instance_type,
        "VolumeSizeInGB": volume_size,
    }
    if volume_kms_key is not None:
        resource_config["VolumeKmsKeyId"] = volume_kms_key
    return resource_config


def prepare_stop_condition(max_run: int, max_wait: Optional[int] = None) -> dict:
    if max_wait:
        return {"MaxRuntimeInSeconds": max_run, "MaxWaitTimeInSeconds": max_wait}
    return {"MaxRuntimeInSeconds": max_run}
