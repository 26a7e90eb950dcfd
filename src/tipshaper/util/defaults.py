# -*- coding: utf-8 -*-

DEFAULT_HOST_ADDR = "127.0.0.1"
DEFAULT_CONTROL_PORT = 6501
DEFAULT_STREAM_PORT = 6590
DEFAULT_LOGLEVEL = "INFO"
TEST_LOGLEVEL = "TRACE"
DEFAULT_LOG_PATH = "~/.tipshaper/tipshaper.log"
SINGLE_LINE_ERR_LOG = False  # reformat tracebacks into a single line for reports

DEFAULT_CONNECT_TIMEOUT = 5.0  # seconds
DEFAULT_READ_TIMEOUT = 10.0  # seconds
DEFAULT_WRITE_TIMEOUT = 5.0  # seconds
STREAM_READ_TIMEOUT = 30.0  # seconds
BUFFER_POLL_INTERVAL = 0.1  # seconds, bounded wait on the frame queue
DEFAULT_BUFFER_CAPACITY = 10_000  # frames

ENV_PREFIX = "TIPSHAPER"
