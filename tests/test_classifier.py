import pytest

from app.core.query.classifier import (
    READ_OPERATIONS,
    WRITE_OPERATIONS,
    Category,
    classify,
)
from app.core.query.parser import OperationKind, parse_query


def test_every_operation_is_classified_exactly_once():
    assert READ_OPERATIONS | WRITE_OPERATIONS == set(OperationKind)
    assert not READ_OPERATIONS & WRITE_OPERATIONS


@pytest.mark.parametrize(
    "kind",
    [OperationKind.FIND, OperationKind.AGGREGATE, OperationKind.COUNT_DOCUMENTS],
)
def test_reads_are_auto_executed(kind):
    classification = classify(kind)
    assert classification.category == Category.READ
    assert classification.auto_execute_eligible is True


@pytest.mark.parametrize(
    "kind",
    [
        OperationKind.INSERT_ONE,
        OperationKind.INSERT_MANY,
        OperationKind.UPDATE_ONE,
        OperationKind.UPDATE_MANY,
        OperationKind.DELETE_ONE,
        OperationKind.DELETE_MANY,
    ],
)
def test_writes_need_approval(kind):
    classification = classify(kind)
    assert classification.category == Category.WRITE
    assert classification.auto_execute_eligible is False


def test_arguments_do_not_change_the_category():
    """An empty delete filter is still a write, a huge find is still a read"""
    assert classify(parse_query("db.users.deleteMany({_id: -1})").operation_kind).category == Category.WRITE
    assert classify(parse_query("db.users.find({})").operation_kind).category == Category.READ


def test_classify_accepts_operation_names():
    assert classify("countDocuments").category == Category.READ
