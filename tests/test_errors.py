import pytest

from amplink.errors import (
    BusyError,
    InvalidArgumentError,
    LoaderStateError,
    NoDeviceError,
    OutOfMemoryError,
    RemoteprocError,
    ResourceNotPresentError,
    ResourceNotSupportedError,
    ResourceTableError,
    ResourceTableReservedError,
    ResourceTableTruncatedError,
    ResourceTableVersionError,
)


def _all_with(*args):
    return [
        RemoteprocError(*args),
        InvalidArgumentError(*args),
        NoDeviceError(*args),
        BusyError(*args),
        OutOfMemoryError(*args),
        LoaderStateError(*args),
        ResourceTableError(*args),
        ResourceTableTruncatedError(*args),
        ResourceTableVersionError(*args),
        ResourceTableReservedError(*args),
        ResourceNotPresentError(*args),
        ResourceNotSupportedError(*args),
    ]


def test_default_message_used_when_none_given():
    errors = _all_with()
    assert len(errors) == 12
    for err in errors:
        assert str(err) == type(err).default_message
        assert len(str(err)) > 0


def test_custom_message_kept():
    for err in _all_with("boom"):
        assert str(err) == "boom"
        assert err.args == ("boom",)


def test_every_error_is_a_remoteproc_error():
    for err in _all_with("x"):
        assert isinstance(err, RemoteprocError)
        assert str(err) == "x"


@pytest.mark.parametrize(
    "cls",
    [
        ResourceTableVersionError,
        ResourceTableTruncatedError,
        ResourceTableReservedError,
        ResourceNotPresentError,
        ResourceNotSupportedError,
    ],
)
def test_table_errors_caught_as_table_error(cls):
    err = cls("table problem")
    assert err.args == ("table problem",)
    with pytest.raises(ResourceTableError) as info:
        raise err
    assert info.value is err
    assert str(info.value) == "table problem"
    assert str(cls()) == cls.default_message


def test_invalid_argument_is_value_error():
    err = InvalidArgumentError("bad image")
    assert isinstance(err, ValueError)
    assert str(err) == "bad image"


def test_default_messages_are_distinct():
    messages = [str(err) for err in _all_with()]
    assert len(set(messages)) == len(messages)


def test_non_table_errors_are_not_table_errors():
    errors = [NoDeviceError(), BusyError(), OutOfMemoryError(), LoaderStateError()]
    for err in errors:
        assert not isinstance(err, ResourceTableError)
        assert str(err) == type(err).default_message