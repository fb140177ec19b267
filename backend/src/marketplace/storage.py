"""
Storage collaborator: the system of record for jobs, audit events and
onboarding progress.

Every state change goes through a conditional write (compare the expected
status or step, then set). Two implementations share the contract:
- DynamoStorage: DynamoDB tables, ConditionExpression compare-and-set
- InMemoryStorage: in-process dict guarded by a lock, for local runs and tests
"""
import copy
import threading
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from .config import config
from .dynamo import get_resource, is_condition_failure, query_all, update_expression
from .errors import InvalidInput
from .logging import get_logger
from .models import Job, JobEvent, OnboardingState, UpdateResult
from .retry import transient_aws_errors

logger = get_logger('storage')

# record type -> (config table attribute, key attribute)
RECORD_TABLES = {
    Job: ('JOBS_TABLE', 'jobId'),
    JobEvent: ('JOB_EVENTS_TABLE', 'eventId'),
    OnboardingState: ('ONBOARDING_TABLE', 'providerId'),
}


def _record_table(record) -> tuple:
    try:
        return RECORD_TABLES[type(record)]
    except KeyError:
        raise TypeError(f"No table for record type {type(record).__name__}")


@runtime_checkable
class Storage(Protocol):
    """Interface the engine and tracker depend on for truth."""

    def get_job(self, job_id: str) -> Optional[Job]:
        ...

    def conditional_update_status(
        self, job_id: str, expected_status: str, new_status: str, fields: Dict[str, Any]
    ) -> UpdateResult:
        ...

    def insert(self, record) -> bool:
        """Create a record; False if one with the same key already exists."""
        ...

    def upsert(self, record, conflict_key: str) -> None:
        ...

    def query_job_events(self, job_id: str) -> List[JobEvent]:
        ...

    def list_jobs_by_status(self, status: str, created_before: Optional[str] = None) -> List[Job]:
        ...

    def get_onboarding(self, provider_id: str) -> Optional[OnboardingState]:
        ...

    def conditional_update_onboarding(
        self, provider_id: str, expected_step: int, fields: Dict[str, Any]
    ) -> bool:
        ...

    def update_onboarding_attributes(
        self, provider_id: str, fields: Dict[str, Any], expected: Optional[Dict[str, Any]] = None
    ) -> Optional[OnboardingState]:
        """Set only `fields` on an existing row. None if it is missing or `expected` no longer holds."""
        ...


class DynamoStorage:
    """
    DynamoDB-backed storage.

    Tables:
        JOBS_TABLE        pk jobId, GSI StatusIndex (status, createdAt)
        JOB_EVENTS_TABLE  pk eventId, GSI JobIndex (jobId, createdAt)
        ONBOARDING_TABLE  pk providerId
    """

    def __init__(self, dynamodb=None):
        self.dynamodb = dynamodb or get_resource()
        self.jobs_table = self.dynamodb.Table(config.JOBS_TABLE)
        self.events_table = self.dynamodb.Table(config.JOB_EVENTS_TABLE)
        self.onboarding_table = self.dynamodb.Table(config.ONBOARDING_TABLE)

    def _table(self, record):
        table_attr, key_attr = _record_table(record)
        return self.dynamodb.Table(getattr(config, table_attr)), key_attr

    def get_job(self, job_id: str) -> Optional[Job]:
        with transient_aws_errors(f"get job {job_id}"):
            response = self.jobs_table.get_item(Key={'jobId': job_id}, ConsistentRead=True)
        item = response.get('Item')
        return Job.from_item(item) if item else None

    def conditional_update_status(
        self, job_id: str, expected_status: str, new_status: str, fields: Dict[str, Any]
    ) -> UpdateResult:
        expression, names, values = update_expression(fields)
        names['#status'] = 'status'
        values[':expected'] = expected_status
        values[':new'] = new_status
        set_clause = '#status = :new' + (f', {expression}' if expression else '')

        try:
            with transient_aws_errors(f"update job {job_id}"):
                response = self.jobs_table.update_item(
                    Key={'jobId': job_id},
                    UpdateExpression=f'SET {set_clause}',
                    ConditionExpression='#status = :expected',
                    ExpressionAttributeNames=names,
                    ExpressionAttributeValues=values,
                    ReturnValues='ALL_NEW',
                )
        except ClientError as e:
            if is_condition_failure(e):
                # Lost the compare-and-set: report the row as it stands now
                return UpdateResult(applied=False, job=self.get_job(job_id))
            raise

        return UpdateResult(applied=True, job=Job.from_item(response['Attributes']))

    def insert(self, record) -> bool:
        table, key_attr = self._table(record)
        try:
            with transient_aws_errors(f"insert into {table.name}"):
                table.put_item(
                    Item=record.to_item(),
                    ConditionExpression=f'attribute_not_exists({key_attr})',
                )
        except ClientError as e:
            if is_condition_failure(e):
                return False
            raise
        return True

    def upsert(self, record, conflict_key: str) -> None:
        table, key_attr = self._table(record)
        if conflict_key != key_attr:
            raise InvalidInput(f"{table.name} is keyed on {key_attr}, not {conflict_key}")
        with transient_aws_errors(f"upsert into {table.name}"):
            table.put_item(Item=record.to_item())

    def query_job_events(self, job_id: str) -> List[JobEvent]:
        items = query_all(
            self.events_table,
            Key('jobId').eq(job_id),
            index_name='JobIndex',
        )
        return [JobEvent.from_item(i) for i in items]

    def list_jobs_by_status(self, status: str, created_before: Optional[str] = None) -> List[Job]:
        condition = Key('status').eq(status)
        if created_before:
            condition = condition & Key('createdAt').lt(created_before)
        items = query_all(self.jobs_table, condition, index_name='StatusIndex')
        return [Job.from_item(i) for i in items]

    def get_onboarding(self, provider_id: str) -> Optional[OnboardingState]:
        with transient_aws_errors(f"get onboarding {provider_id}"):
            response = self.onboarding_table.get_item(
                Key={'providerId': provider_id}, ConsistentRead=True
            )
        item = response.get('Item')
        return OnboardingState.from_item(item) if item else None

    def conditional_update_onboarding(
        self, provider_id: str, expected_step: int, fields: Dict[str, Any]
    ) -> bool:
        expression, names, values = update_expression(fields)
        names['#step'] = 'currentStep'
        names['#complete'] = 'isComplete'
        values[':expected'] = expected_step
        values[':false'] = False

        try:
            with transient_aws_errors(f"update onboarding {provider_id}"):
                self.onboarding_table.update_item(
                    Key={'providerId': provider_id},
                    UpdateExpression=f'SET {expression}',
                    ConditionExpression='#step = :expected AND #complete = :false',
                    ExpressionAttributeNames=names,
                    ExpressionAttributeValues=values,
                )
        except ClientError as e:
            if is_condition_failure(e):
                return False
            raise
        return True

    def update_onboarding_attributes(
        self, provider_id: str, fields: Dict[str, Any], expected: Optional[Dict[str, Any]] = None
    ) -> Optional[OnboardingState]:
        expression, names, values = update_expression(fields)
        names['#pk'] = 'providerId'
        conditions = ['attribute_exists(#pk)']
        for idx, (attr, value) in enumerate((expected or {}).items()):
            names[f'#e{idx}'] = attr
            values[f':e{idx}'] = value
            conditions.append(f'#e{idx} = :e{idx}')

        try:
            with transient_aws_errors(f"update onboarding {provider_id}"):
                response = self.onboarding_table.update_item(
                    Key={'providerId': provider_id},
                    UpdateExpression=f'SET {expression}',
                    ConditionExpression=' AND '.join(conditions),
                    ExpressionAttributeNames=names,
                    ExpressionAttributeValues=values,
                    ReturnValues='ALL_NEW',
                )
        except ClientError as e:
            if is_condition_failure(e):
                return None
            raise
        return OnboardingState.from_item(response['Attributes'])


class InMemoryStorage:
    """
    Process-local storage with the same compare-and-set semantics.

    Items are kept in their DynamoDB shape so both implementations round-trip
    models the same way.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {
            'JOBS_TABLE': {},
            'JOB_EVENTS_TABLE': {},
            'ONBOARDING_TABLE': {},
        }

    def _rows(self, record):
        table_attr, key_attr = _record_table(record)
        return self._tables[table_attr], key_attr

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            item = self._tables['JOBS_TABLE'].get(job_id)
            return Job.from_item(copy.deepcopy(item)) if item else None

    def conditional_update_status(
        self, job_id: str, expected_status: str, new_status: str, fields: Dict[str, Any]
    ) -> UpdateResult:
        with self._lock:
            item = self._tables['JOBS_TABLE'].get(job_id)
            if item is None or item.get('status') != expected_status:
                current = Job.from_item(copy.deepcopy(item)) if item else None
                return UpdateResult(applied=False, job=current)
            item.update(copy.deepcopy(fields))
            item['status'] = new_status
            return UpdateResult(applied=True, job=Job.from_item(copy.deepcopy(item)))

    def insert(self, record) -> bool:
        rows, key_attr = self._rows(record)
        item = record.to_item()
        with self._lock:
            if item[key_attr] in rows:
                return False
            rows[item[key_attr]] = copy.deepcopy(item)
            return True

    def upsert(self, record, conflict_key: str) -> None:
        rows, key_attr = self._rows(record)
        if conflict_key != key_attr:
            raise InvalidInput(f"records are keyed on {key_attr}, not {conflict_key}")
        item = record.to_item()
        with self._lock:
            rows[item[key_attr]] = copy.deepcopy(item)

    def query_job_events(self, job_id: str) -> List[JobEvent]:
        with self._lock:
            items = [copy.deepcopy(i) for i in self._tables['JOB_EVENTS_TABLE'].values()
                     if i['jobId'] == job_id]
        items.sort(key=lambda i: i.get('createdAt', ''))
        return [JobEvent.from_item(i) for i in items]

    def list_jobs_by_status(self, status: str, created_before: Optional[str] = None) -> List[Job]:
        with self._lock:
            items = [copy.deepcopy(i) for i in self._tables['JOBS_TABLE'].values()
                     if i.get('status') == status
                     and (not created_before or i.get('createdAt', '') < created_before)]
        items.sort(key=lambda i: i.get('createdAt', ''))
        return [Job.from_item(i) for i in items]

    def get_onboarding(self, provider_id: str) -> Optional[OnboardingState]:
        with self._lock:
            item = self._tables['ONBOARDING_TABLE'].get(provider_id)
            return OnboardingState.from_item(copy.deepcopy(item)) if item else None

    def conditional_update_onboarding(
        self, provider_id: str, expected_step: int, fields: Dict[str, Any]
    ) -> bool:
        with self._lock:
            item = self._tables['ONBOARDING_TABLE'].get(provider_id)
            if item is None or item.get('currentStep') != expected_step or item.get('isComplete'):
                return False
            item.update(copy.deepcopy(fields))
            return True

    def update_onboarding_attributes(
        self, provider_id: str, fields: Dict[str, Any], expected: Optional[Dict[str, Any]] = None
    ) -> Optional[OnboardingState]:
        with self._lock:
            item = self._tables['ONBOARDING_TABLE'].get(provider_id)
            if item is None or any(item.get(attr) != value for attr, value in (expected or {}).items()):
                return None
            item.update(copy.deepcopy(fields))
            return OnboardingState.from_item(copy.deepcopy(item))
