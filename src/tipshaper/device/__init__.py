# -*- coding: utf-8 -*-
"""
Instrument connections for tipshaper.

- `Device`: common open/close/context-manager interface
- `tipshaper.device.nanonis`: Nanonis control client, wire protocol and the TCP
  logger data stream

Examples
--------
```python
from tipshaper.device import NanonisClient
with NanonisClient("127.0.0.1", 6501) as client:
    print(client.bias_get())
```
"""

from .device import Device
from .nanonis import NanonisClient, TCPLoggerStream

__all__ = ["Device", "NanonisClient", "TCPLoggerStream"]
