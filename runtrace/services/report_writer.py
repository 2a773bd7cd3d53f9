"""
Report Writer
=============
Serializes a PipelineReport into a JSON file for later inspection.
"""
import json
import logging
import os

from runtrace.models.outcome import Outcome, PipelineReport

logger = logging.getLogger(__name__)


class ReportWriter:
    """
    Writes the outcome of one query pass as JSON:

        {
          "repository": ..., "workflow": ..., "devel": ...,
          "started_at": ..., "finished_at": ...,
          "summary": {"exported": 1, "already_sent": 3, ...},
          "runs": [ {run_id, outcome, stage, trace_id, span_count, failed_at, detail}, ... ]
        }
    """

    @staticmethod
    def build(report: PipelineReport) -> dict:
        data = report.model_dump(mode="json", exclude={"outcomes"})
        data["summary"] = {o.value: report.count(o) for o in Outcome}
        data["runs"] = [
            o.model_dump(mode="json", exclude={"repository", "workflow"})
            for o in report.outcomes
        ]
        return data

    @staticmethod
    def write_report(report: PipelineReport, output_path: str = "report.json") -> bool:
        """
        Write the report; returns False (and logs) if the file cannot be written.
        """
        abs_output = os.path.abspath(output_path)
        try:
            logger.info("Writing report to %s", abs_output)
            with open(abs_output, "w", encoding="utf-8") as f:
                json.dump(ReportWriter.build(report), f, indent=2)
            return True
        except OSError as e:
            logger.error("Failed to write %s: %s", abs_output, e)
            return False
