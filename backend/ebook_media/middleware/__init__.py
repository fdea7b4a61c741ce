from ebook_media.middleware.request_log import RequestLoggingMiddleware

__all__ = ["RequestLoggingMiddleware"]
