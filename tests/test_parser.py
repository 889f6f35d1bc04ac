import re
from datetime import datetime, timezone

import pytest
from bson.objectid import ObjectId
from bson.regex import Regex

from app.core.exceptions import ParseError
from app.core.query.parser import OperationKind, parse_query


def test_parse_simple_find():
    operation = parse_query('db.users.find({"status": "active"})')

    assert operation.collection_name == "users"
    assert operation.operation_kind == OperationKind.FIND
    assert operation.arguments == ({"status": "active"},)


def test_parse_find_without_arguments():
    operation = parse_query("db.users.find()")
    assert operation.arguments == ()


def test_parse_relaxed_keys_and_literals():
    """Unquoted keys, single quotes and shell keywords"""
    operation = parse_query(
        "db.orders.find({status: 'paid', total: {$gte: -1.5}, count: 10, "
        "big: 1e3, gift: true, note: null, tags: ['a', 'b']})"
    )
    assert operation.arguments[0] == {
        "status": "paid",
        "total": {"$gte": -1.5},
        "count": 10,
        "big": 1000.0,
        "gift": True,
        "note": None,
        "tags": ["a", "b"],
    }


def test_parse_string_escapes():
    operation = parse_query(r'db.notes.insertOne({"te\"xt": "line\nnext é"})')
    assert operation.arguments[0] == {'te"xt': "line\nnext é"}


def test_parse_bson_constructors():
    operation = parse_query(
        'db.events.find({_id: ObjectId("507f1f77bcf86cd799439011"), '
        'at: {$gte: ISODate("2024-01-01T00:00:00Z")}, seen: new Date(0)})'
    )
    document = operation.arguments[0]

    assert document["_id"] == ObjectId("507f1f77bcf86cd799439011")
    assert document["at"]["$gte"] == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert document["seen"] == datetime(1970, 1, 1, tzinfo=timezone.utc)


def test_parse_regex_literal():
    operation = parse_query("db.users.find({name: /^ad[a-z/]+/i})")
    value = operation.arguments[0]["name"]

    assert isinstance(value, Regex)
    assert value.pattern == "^ad[a-z/]+"
    assert value.flags == re.IGNORECASE


def test_parse_comments_whitespace_and_semicolon():
    operation = parse_query(
        """
        // active users only
        db.users.find(
            { /* filter */ status: "active" }
        );
        """
    )
    assert operation.arguments == ({"status": "active"},)


def test_parse_get_collection_and_dotted_names():
    assert parse_query("db.getCollection('audit.log').find()").collection_name == "audit.log"
    assert parse_query("db.audit.log.countDocuments({})").collection_name == "audit.log"


@pytest.mark.parametrize(
    "query, kind",
    [
        ("db.c.find({})", OperationKind.FIND),
        ("db.c.aggregate([{$match: {}}])", OperationKind.AGGREGATE),
        ("db.c.countDocuments()", OperationKind.COUNT_DOCUMENTS),
        ("db.c.insertOne({a: 1})", OperationKind.INSERT_ONE),
        ("db.c.insertMany([{a: 1}, {a: 2}], {ordered: false})", OperationKind.INSERT_MANY),
        ("db.c.updateOne({a: 1}, {$set: {b: 2}}, {upsert: true})", OperationKind.UPDATE_ONE),
        ("db.c.updateMany({}, [{$set: {b: 2}}])", OperationKind.UPDATE_MANY),
        ("db.c.deleteOne({a: 1})", OperationKind.DELETE_ONE),
        ("db.c.deleteMany({})", OperationKind.DELETE_MANY),
    ],
)
def test_parse_every_supported_operation(query, kind):
    assert parse_query(query).operation_kind == kind


@pytest.mark.parametrize("query", [None, "", "   \n\t", "// nothing here"])
def test_empty_query(query):
    with pytest.raises(ParseError) as error:
        parse_query(query)
    assert error.value.message == "empty query"


def test_wrong_root_accessor():
    with pytest.raises(ParseError) as error:
        parse_query("mydb.users.find()")
    assert error.value.message == "query must start with 'db.', found 'mydb'"
    assert error.value.position == 0


@pytest.mark.parametrize("operation", ["drop", "remove", "createIndex", "mapReduce"])
def test_unsupported_operation(operation):
    with pytest.raises(ParseError) as error:
        parse_query(f"db.users.{operation}()")
    assert error.value.message == f"unsupported operation: {operation}"
    assert error.value.position == 9


def test_unbalanced_parenthesis():
    with pytest.raises(ParseError) as error:
        parse_query("db.users.find({a: 1}")
    assert error.value.message == "unbalanced '('"
    assert error.value.position == 13


def test_unbalanced_brace():
    with pytest.raises(ParseError) as error:
        parse_query("db.users.find({a: 1")
    assert error.value.message == "unbalanced '{'"
    assert error.value.position == 14


def test_unterminated_string():
    with pytest.raises(ParseError) as error:
        parse_query("db.users.find({a: 'x})")
    assert error.value.message == "unterminated string"
    assert error.value.position == 18


@pytest.mark.parametrize(
    "query",
    [
        "db.users.find({}); db.users.drop()",
        "db.users.find() extra",
    ],
)
def test_trailing_content_rejected(query):
    with pytest.raises(ParseError) as error:
        parse_query(query)
    assert error.value.message == "unexpected trailing content"


@pytest.mark.parametrize(
    "query, message",
    [
        ("db.users.find({$where: 'this.a > 1'})", "operator $where is not allowed"),
        ("db.users.find(function() { return true })", "function literals are not allowed"),
        ("db.users.find({a: undefined})", "unexpected identifier 'undefined'"),
    ],
)
def test_code_is_never_accepted(query, message):
    with pytest.raises(ParseError) as error:
        parse_query(query)
    assert error.value.message == message


def test_argument_count_checked():
    with pytest.raises(ParseError) as error:
        parse_query("db.users.insertOne()")
    assert "takes 1 arguments, got 0" in error.value.message

    with pytest.raises(ParseError):
        parse_query("db.users.updateOne({a: 1})")


def test_argument_types_checked():
    with pytest.raises(ParseError) as error:
        parse_query("db.users.aggregate({$match: {}})")
    assert error.value.message.startswith("argument 1 of aggregate()")

    with pytest.raises(ParseError) as error:
        parse_query("db.users.insertMany([{a: 1}, 2])")
    assert "must be a document" in error.value.message


def test_parse_error_text_includes_position():
    with pytest.raises(ParseError) as error:
        parse_query("db.users.drop()")
    assert str(error.value) == "unsupported operation: drop (at position 9)"


def test_chained_cursor_method_has_its_own_message():
    with pytest.raises(ParseError) as error:
        parse_query("db.users.find({}).limit(10)")
    assert error.value.message == (
        "chained cursor methods such as .limit() are not supported; "
        "results are capped automatically"
    )
    assert error.value.position == 17


def test_deep_nesting_is_a_parse_error():
    query = "db.a.find(" + "{a:" * 3000 + "1" + "}" * 3000 + ")"
    with pytest.raises(ParseError) as error:
        parse_query(query)
    assert error.value.message.startswith("nesting too deep")

    # Ordinary nesting still parses
    nested = parse_query("db.a.find(" + "{a:" * 50 + "1" + "}" * 50 + ")")
    assert nested.operation_kind == OperationKind.FIND


@pytest.mark.parametrize(
    "query",
    [
        "db.users.find({at: new Date(1e20)})",
        "db.users.find({at: ISODate('0001-01-01T00:00:00+01:00')})",
        "db.users.find({at: ISODate('9999-12-31T23:59:59-01:00')})",
    ],
)
def test_out_of_range_dates_are_parse_errors(query):
    with pytest.raises(ParseError) as error:
        parse_query(query)
    assert error.value.message.startswith("invalid date")


@pytest.mark.parametrize(
    "query, stage",
    [
        ("db.users.aggregate([{$out: 'users_copy'}])", "$out"),
        ("db.users.aggregate([{$match: {}}, {$merge: {into: 'users_copy'}}])", "$merge"),
    ],
)
def test_writing_pipeline_stages_are_refused(query, stage):
    with pytest.raises(ParseError) as error:
        parse_query(query)
    assert error.value.message.startswith(f"pipeline stage {stage} writes to a collection")
