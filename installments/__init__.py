"""Installment schedule synthesis for payable documents."""

from installments.synthesizer import (
    ScheduleInterval,
    adjust_last_installment,
    due_date_for,
    schedule_difference,
    split_evenly,
    synthesize,
    validate_schedule,
)

__all__ = [
    "ScheduleInterval",
    "adjust_last_installment",
    "due_date_for",
    "schedule_difference",
    "split_evenly",
    "synthesize",
    "validate_schedule",
]
