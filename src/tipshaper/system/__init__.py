# -*- coding: utf-8 -*-
"""
Application configuration files.

Examples
--------
```python
from tipshaper.system import load_app_config
config = load_app_config("./tipshaper.ini")
```

See Also
--------
tipshaper.types.config : The configuration dataclasses
"""

from .appconfig import (
    load_app_config,
    validate_config_file,
    write_default_config,
)

__all__ = ["load_app_config", "validate_config_file", "write_default_config"]
