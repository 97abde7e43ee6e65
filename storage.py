import json
import logging
import os
import tempfile
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


class JsonFileStore:
    """
    Flat-file snapshot of the message history.

    Layout: {"messages": [{id, author, content, timestamp, likes, dislikes}, ...]}
    Who liked/disliked what is not stored, only the counts.
    """

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> List[dict]:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                parsed = json.load(fh)
        except FileNotFoundError:
            logger.info("No existing messages file at %s, starting fresh", self.path)
            return []
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable messages file %s, starting fresh: %s", self.path, exc)
            return []

        if not isinstance(parsed, dict) or not isinstance(parsed.get("messages"), list):
            logger.warning("Messages file %s has no message list, starting fresh", self.path)
            return []
        return parsed["messages"]

    def save(self, messages: List[dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Write next to the target, then swap it in
        fd, tmp_path = tempfile.mkstemp(
            prefix=self.path.name + ".", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"messages": messages}, fh, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
