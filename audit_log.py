import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional


class AuditLog:
    """Append-only JSON-lines sink for outbound SERP requests and raw responses.

    One file records every task submission before it is sent, the other keeps
    the raw task payload of every result that came back. Lines are never
    rewritten, so the files double as an audit trail across runs.
    """

    def __init__(self, directory: Path, submit_name: str = "submit_requests.jsonl", results_name: str = "results_dump.jsonl"):
        self.directory = Path(directory)
        self.submit_file = self.directory / submit_name
        self.results_file = self.directory / results_name

    def record_submission(self, url: str, payload: Any, tracked_url: Optional[str] = None) -> None:
        self._append(
            self.submit_file,
            {
                "url": url,
                "tracked_url": tracked_url or "",
                "payload": payload,
            },
        )
        logging.debug("Submit request logged for %s", tracked_url or url)

    def record_result(self, task_id: str, raw_task: Any, tracked_url: Optional[str] = None) -> None:
        self._append(
            self.results_file,
            {
                "task_id": task_id,
                "tracked_url": tracked_url or "",
                "task": raw_task,
            },
        )
        logging.debug("Results dump logged for task %s", task_id)

    def read_submissions(self) -> List[Dict[str, Any]]:
        return list(self._iter_records(self.submit_file))

    def read_results(self) -> List[Dict[str, Any]]:
        return list(self._iter_records(self.results_file))

    def _append(self, path: Path, record: Dict[str, Any]) -> None:
        entry = {"timestamp": datetime.now(timezone.utc).isoformat()}
        entry.update(record)
        self.directory.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, ensure_ascii=False) + "\n")

    @staticmethod
    def _iter_records(path: Path) -> Iterator[Dict[str, Any]]:
        if not path.exists():
            return
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logging.warning("Skipping unreadable audit line in %s", path)
