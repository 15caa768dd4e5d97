import json
import os

from src.export.junit import write_junit_report


class ResultSink:
    def write_from_config(self, config, report, envelope: dict) -> None:
        if config.console:
            print(json.dumps(envelope, indent=2))

        path = config.json_output
        if path:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(envelope, f, indent=2)

        if config.junit_output:
            write_junit_report(report, config.junit_output)
