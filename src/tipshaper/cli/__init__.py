"""
Command-line interface for tipshaper.

The CLI is built using the Click framework and provides:

- Running a tip conditioning session
- Creating, showing and validating configuration files
- Listing the controller's signals
- Summarising experiment action logs

Examples
--------
Create a configuration and run:
```bash
$ tipshaper config init ./tipshaper.ini
$ tipshaper run -c ./tipshaper.ini
```

Find the frequency shift signal:
```bash
$ tipshaper signals -f freq
```

See Also
--------
tipshaper.meas.tip_prep : The conditioning state machine
tipshaper.system.appconfig : Configuration files


CLI Tree
--------

```
$ tipshaper --tree
cli
└── config
    └── init
    └── show
    └── validate
└── log
    └── show
└── run
└── signals
```
"""

from .base import cli, tree_option
from .config import config, log
from .run import run

cli.add_command(config)
cli.add_command(log)

__all__ = ["cli", "tree_option", "run"]
