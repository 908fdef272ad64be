from .logger import LogConfig, get_logger, bind_session, unbind_session

__all__ = ["LogConfig", "get_logger", "bind_session", "unbind_session"]
