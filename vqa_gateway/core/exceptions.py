# vqa_gateway/core/exceptions.py


class VQAGatewayError(Exception):
    """所有网关错误的基类，携带对应的 HTTP 状态码。"""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputValidationError(VQAGatewayError):
    """请求体缺失字段、模式非法或图片过大。"""

    status_code = 400


class ConfigurationError(VQAGatewayError):
    """所选生成后端缺少配置，或后端名称无法识别。"""

    status_code = 500


class ProviderUnavailableError(ConfigurationError):
    """本地生成后端无法连接。"""

    status_code = 503


class GenerationError(VQAGatewayError):
    """生成后端在流式输出过程中失败。"""

    status_code = 502


class EventStreamError(VQAGatewayError):
    """客户端解码时收到了错误记录。"""

    status_code = 502
