"""Workflow definitions module."""

from workflows.import_batch_workflow import ImportBatchWorkflow, ImportBatchInput, TASK_QUEUE

__all__ = ["ImportBatchWorkflow", "ImportBatchInput", "TASK_QUEUE"]
