from flowwatch.logs.reader import LogReader, parse_content, parse_line
from flowwatch.logs.writer import WorkflowLogger

__all__ = ["LogReader", "WorkflowLogger", "parse_content", "parse_line"]
