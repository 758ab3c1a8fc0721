import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from rlsmanager.config.defaults import Default
from rlsmanager.data_classes import PublishStatus
from rlsmanager.publishing.version_history import VersionHistory
from rlsmanager.storage.s3_storage import S3Storage

DS = "arn:aws:quicksight:eu-west-1:111122223333:dataset/sales"
KEY = "RLS-Datasets/sales/QS_RLS_Managed_sales.csv"


@pytest.fixture
def history(catalog):
    return VersionHistory(catalog, Default())


@pytest.fixture
def s3():
    return MagicMock()


@pytest.fixture
def storage(s3):
    return S3Storage("rls-bucket", s3)


def test_record_and_list(history):
    history.record(DS, 1, PublishStatus.SUCCESS, s3_key=KEY, s3_version_id="v1", permission_count=3)
    history.record(DS, 2, PublishStatus.FAILED, error_message="Glue unreachable", published_by="ops")

    records = history.history(DS)
    assert [(h.version, h.status) for h in records] == [(2, "FAILED"), (1, "SUCCESS")]
    assert records[0].error_message == "Glue unreachable"
    assert records[0].published_by == "ops"
    assert records[1].permission_count == 3
    assert records[1].published_at


def test_record_same_version_twice_fails(history):
    history.record(DS, 1, PublishStatus.SUCCESS)
    with pytest.raises(ValueError):
        history.record(DS, 1, PublishStatus.FAILED)


def test_list_versions_uses_managed_key(history, storage, s3):
    paginator = MagicMock()
    paginator.paginate.return_value = iter([{"Versions": [{"Key": KEY, "VersionId": "v1"}]}])
    s3.get_paginator.return_value = paginator

    versions = history.list_versions(storage, "sales")

    assert [v.version_id for v in versions] == ["v1"]
    assert paginator.paginate.call_args.kwargs["Prefix"] == KEY


def test_get_version_content(history, storage, s3):
    s3.get_object.return_value = {"Body": io.BytesIO(b"UserARN,GroupARN,region\n")}
    assert history.get_version_content(storage, "sales", "v1") == "UserARN,GroupARN,region\n"
    s3.get_object.assert_called_once_with(Bucket="rls-bucket", Key=KEY, VersionId="v1")


def test_rollback_copies_old_version_on_top(history, storage, s3):
    s3.get_object.return_value = {"Body": io.BytesIO(b"old,csv")}
    s3.copy_object.return_value = {"VersionId": "v9"}

    result = history.rollback(storage, "sales", "v2")

    assert result.status == 200
    assert result.payload == {"new_version_id": "v9", "csv_content": "old,csv", "s3_key": KEY}
    assert s3.copy_object.call_args.kwargs["CopySource"]["VersionId"] == "v2"


def test_rollback_unknown_version_is_404(history, storage, s3):
    s3.get_object.side_effect = ClientError({"Error": {"Code": "NoSuchVersion", "Message": "x"}}, "GetObject")
    result = history.rollback(storage, "sales", "nope")
    assert result.status == 404
    assert result.error_type == "NoSuchKey"
    s3.copy_object.assert_not_called()


def test_rollback_copy_error_is_mapped(history, storage, s3):
    s3.get_object.return_value = {"Body": io.BytesIO(b"x")}
    s3.copy_object.side_effect = ClientError({"Error": {"Code": "AccessDenied", "Message": "no"}}, "CopyObject")
    result = history.rollback(storage, "sales", "v2")
    assert result.status == 403
    assert result.message == "Rollback failed: no"
