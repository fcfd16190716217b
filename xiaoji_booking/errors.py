"""业务异常"""


class BookingError(Exception):
    """所有业务异常的基类"""


class NotFoundError(BookingError):
    pass


class ValidationError(BookingError):
    pass


class BindCodeError(BookingError):
    """绑定码不存在、已使用或无法生成"""


class PermissionDenied(BookingError):
    pass


class DeliveryError(Exception):
    """Telegram 消息发送、编辑或删除失败，消息为接口返回的描述"""
