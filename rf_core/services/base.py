"""
基础服务类
"""
from typing import Optional
from abc import ABC

from rf_core.config import Settings, get_settings
from rf_core.utils.logger import get_logger


class BaseService(ABC):
    """基础服务类

    服务对象无状态，启动时构造一次并注入使用；
    所有写操作都接收调用方传入的事务会话。
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.logger = get_logger(self.__class__.__name__)
