import asyncio
import sys

import pgclone.api
import pgclone.logstreams

if __name__ == "__main__":  # codecov-skip
    cfg, err1 = pgclone.api.compile_config()
    request, err2 = pgclone.api.compile_command()
    if err1 or err2:
        sys.exit(1)

    try:
        pgclone.logstreams.setup(cfg.loglevel)
        err = asyncio.run(pgclone.api.main(cfg, request))
    except KeyboardInterrupt:
        print("User abort")
        sys.exit(1)
    sys.exit(1 if err else 0)
