"""
Tests for the Lambda handlers. Engine and tracker are mocked; these check the
HTTP mapping, input parsing and authorization done at the edge.
"""
import json
from unittest.mock import MagicMock, patch

import pytest

from conftest import NOW
from marketplace.errors import (
    AlreadyClaimed,
    CollaboratorUnavailable,
    InvalidTransition,
    OnboardingLocked,
    SettlementFailed,
)
from marketplace.models import (
    JobEvent,
    JobStatus,
    OnboardingStage,
    OnboardingState,
    Party,
    SettlementStatus,
    UpdateResult,
)
from marketplace.onboarding import VARIANTS


def api_event(sub='provider-a', groups='provider', job_id='job-1', body=None):
    claims = {'cognito:groups': groups}
    if sub:
        claims['sub'] = sub
    return {
        'pathParameters': {'jobId': job_id} if job_id else None,
        'requestContext': {'authorizer': {'claims': claims}},
        'body': json.dumps(body) if body is not None else None,
    }


def body_of(response):
    return json.loads(response['body'])


@pytest.fixture
def mock_engine():
    return MagicMock()


class TestJobHandlers:
    """Provider job actions."""

    def test_accept(self, mock_engine, make_job):
        from handlers.jobs import accept_job
        mock_engine.accept.return_value = make_job(status=JobStatus.ACCEPTED, fulfiller_id='provider-a')

        with patch('handlers.jobs.accept_job.get_engine', return_value=mock_engine):
            response = accept_job.handler(api_event(), None)

        assert response['statusCode'] == 200
        body = body_of(response)
        assert body['job']['fulfillerId'] == 'provider-a'
        assert body['job']['payout']['netPayout'] == 8000
        assert body['job']['payout']['display']['hourlyRate'] == '66.67'
        mock_engine.accept.assert_called_once_with('job-1', 'provider-a')

    def test_accept_lost_race_is_409(self, mock_engine):
        from handlers.jobs import accept_job
        mock_engine.accept.side_effect = AlreadyClaimed('job-1')

        with patch('handlers.jobs.accept_job.get_engine', return_value=mock_engine):
            response = accept_job.handler(api_event(), None)

        assert response['statusCode'] == 409
        assert body_of(response)['error'] == 'AlreadyClaimed'

    def test_unauthenticated_is_403(self, mock_engine):
        from handlers.jobs import accept_job

        with patch('handlers.jobs.accept_job.get_engine', return_value=mock_engine):
            response = accept_job.handler(api_event(sub=None), None)

        assert response['statusCode'] == 403
        mock_engine.accept.assert_not_called()

    def test_missing_job_id_is_400(self, mock_engine):
        from handlers.jobs import begin_work

        with patch('handlers.jobs.begin_work.get_engine', return_value=mock_engine):
            response = begin_work.handler(api_event(job_id=None), None)

        assert response['statusCode'] == 400

    def test_decline_reports_pool_return(self, mock_engine, make_job):
        from handlers.jobs import decline_job
        mock_engine.decline.return_value = make_job()

        with patch('handlers.jobs.decline_job.get_engine', return_value=mock_engine):
            response = decline_job.handler(api_event(), None)

        assert body_of(response)['returnedToPool'] is True

    @pytest.mark.parametrize('error, status', [
        (SettlementFailed('card declined'), 402),
        (CollaboratorUnavailable('ledger timed out'), 503),
        (InvalidTransition('job-1', 'complete', JobStatus.COMPLETED, {JobStatus.IN_PROGRESS}), 409),
        (RuntimeError('boom'), 500),
    ])
    def test_complete_error_mapping(self, mock_engine, error, status):
        from handlers.jobs import complete_job
        mock_engine.complete.side_effect = error

        with patch('handlers.jobs.complete_job.get_engine', return_value=mock_engine):
            response = complete_job.handler(api_event(), None)

        assert response['statusCode'] == status

    def test_complete_returns_settlement_status(self, mock_engine, make_job):
        from handlers.jobs import complete_job
        mock_engine.complete.return_value = make_job(
            status=JobStatus.COMPLETED, fulfiller_id='provider-a',
            settlement_status=SettlementStatus.DEFERRED, completed_at=NOW.isoformat(),
        )

        with patch('handlers.jobs.complete_job.get_engine', return_value=mock_engine):
            response = complete_job.handler(api_event(), None)

        assert body_of(response)['settlementStatus'] == SettlementStatus.DEFERRED

    def test_report_delay(self, mock_engine, make_job):
        from handlers.jobs import report_delay
        mock_engine.report_delay.return_value = make_job(status=JobStatus.ON_THE_WAY, fulfiller_id='provider-a')

        with patch('handlers.jobs.report_delay.get_engine', return_value=mock_engine):
            ok = report_delay.handler(api_event(body={'minutes': 15}), None)
            bad = report_delay.handler(api_event(body={'minutes': 'soon'}), None)

        assert ok['statusCode'] == 200
        assert bad['statusCode'] == 400
        mock_engine.report_delay.assert_called_once_with('job-1', 15, fulfiller_id='provider-a')

    @pytest.mark.parametrize('minutes', [15.7, '2.5', None, 0])
    def test_report_delay_rejects_partial_or_missing_minutes(self, mock_engine, minutes):
        from handlers.jobs import report_delay

        with patch('handlers.jobs.report_delay.get_engine', return_value=mock_engine):
            response = report_delay.handler(api_event(body={'minutes': minutes}), None)

        assert response['statusCode'] == 400
        mock_engine.report_delay.assert_not_called()

    def test_start_travel(self, mock_engine, make_job):
        from handlers.jobs import start_travel
        mock_engine.start_travel.return_value = make_job(status=JobStatus.ON_THE_WAY, fulfiller_id='provider-a')

        with patch('handlers.jobs.start_travel.get_engine', return_value=mock_engine):
            response = start_travel.handler(api_event(), None)

        assert body_of(response)['job']['status'] == JobStatus.ON_THE_WAY


class TestCancelHandler:

    def test_customer_cancels(self, mock_engine, make_job):
        from handlers.jobs import cancel_job
        mock_engine.cancel.return_value = make_job(status=JobStatus.CANCELLED, cancel_reason='sick')

        with patch('handlers.jobs.cancel_job.get_engine', return_value=mock_engine):
            response = cancel_job.handler(
                api_event(sub='customer-1', groups='customer', body={'reason': 'sick'}), None
            )

        assert response['statusCode'] == 200
        mock_engine.cancel.assert_called_once_with('job-1', Party.requester('customer-1'), 'sick')

    def test_provider_cancelling_own_booking(self, mock_engine, make_job):
        from handlers.jobs import cancel_job
        mock_engine.cancel.return_value = make_job(status=JobStatus.CANCELLED)

        with patch('handlers.jobs.cancel_job.get_engine', return_value=mock_engine):
            cancel_job.handler(api_event(body={'reason': 'double booked', 'as': 'requester'}), None)

        assert mock_engine.cancel.call_args[0][1] == Party.requester('provider-a')

    def test_reason_required(self, mock_engine):
        from handlers.jobs import cancel_job

        with patch('handlers.jobs.cancel_job.get_engine', return_value=mock_engine):
            response = cancel_job.handler(api_event(body={}), None)

        assert response['statusCode'] == 400
        mock_engine.cancel.assert_not_called()


class TestJobReads:

    def test_parties_can_read_job(self, mock_engine, make_job):
        from handlers.jobs import get_job
        mock_engine.get_job.return_value = make_job(status=JobStatus.ACCEPTED, fulfiller_id='provider-a')

        with patch('handlers.jobs.get_job.get_engine', return_value=mock_engine):
            customer = get_job.handler(api_event(sub='customer-1', groups='customer'), None)
            stranger = get_job.handler(api_event(sub='provider-z'), None)

        assert customer['statusCode'] == 200
        assert body_of(customer)['payout']['platformFee'] == 2000
        assert stranger['statusCode'] == 403

    def test_providers_can_browse_open_offers(self, mock_engine, make_job):
        from handlers.jobs import get_job
        mock_engine.get_job.return_value = make_job()

        with patch('handlers.jobs.get_job.get_engine', return_value=mock_engine):
            response = get_job.handler(api_event(sub='provider-z'), None)

        assert response['statusCode'] == 200

    def test_history(self, mock_engine, make_job):
        from handlers.jobs import get_job_history
        mock_engine.get_job.return_value = make_job(status=JobStatus.ACCEPTED, fulfiller_id='provider-a')
        mock_engine.history.return_value = [
            JobEvent('e1', 'job-1', 'job.accepted', 'provider-a', NOW.isoformat(),
                     previous_status=JobStatus.PENDING, new_status=JobStatus.ACCEPTED),
        ]

        with patch('handlers.jobs.get_job_history.get_engine', return_value=mock_engine):
            response = get_job_history.handler(api_event(), None)

        body = body_of(response)
        assert body['count'] == 1
        assert body['events'][0]['newStatus'] == JobStatus.ACCEPTED

    def test_expire_offers(self, mock_engine):
        from handlers.jobs import expire_offers
        mock_engine.expire_stale_offers.return_value = ['job-1', 'job-2']

        with patch('handlers.jobs.expire_offers.get_engine', return_value=mock_engine):
            result = expire_offers.handler({'maxAgeMinutes': 45}, None)

        assert result == {'expired': 2, 'jobIds': ['job-1', 'job-2']}
        mock_engine.expire_stale_offers.assert_called_once_with(45)


class TestQuotePayout:

    def test_quote_from_gross(self):
        from handlers.payouts import quote_payout

        response = quote_payout.handler({'body': json.dumps({'grossPrice': 10000, 'durationMinutes': 90})}, None)

        body = body_of(response)
        assert response['statusCode'] == 200
        assert body['netPayout'] == 8000
        assert body['display']['hourlyRate'] == '66.67'

    def test_quote_from_take_home_pay(self):
        from handlers.payouts import quote_payout

        response = quote_payout.handler({'body': json.dumps({
            'netPayout': '80.00', 'durationMinutes': 60, 'feeRate': '0.20'
        })}, None)

        assert body_of(response)['grossPrice'] == 10000

    @pytest.mark.parametrize('payload', [
        {'durationMinutes': 60},
        {'grossPrice': 10000, 'netPayout': 8000, 'durationMinutes': 60},
        {'grossPrice': 10000},
        {'grossPrice': -5, 'durationMinutes': 60},
        {'grossPrice': 10000, 'durationMinutes': 60, 'feeRate': '1.2'},
    ])
    def test_bad_quotes_are_400(self, payload):
        from handlers.payouts import quote_payout

        response = quote_payout.handler({'body': json.dumps(payload)}, None)

        assert response['statusCode'] == 400


def onboarding_state(step=1, complete=False, stage=OnboardingStage.APPLICANT):
    return OnboardingState(
        'provider-a', 'cleaner', step, 5, is_complete=complete, stage_label=stage,
        created_at=NOW.isoformat(), updated_at=NOW.isoformat(),
    )


@pytest.fixture
def mock_tracker():
    tracker = MagicMock()
    tracker.variant = VARIANTS['cleaner']
    return tracker


class TestOnboardingHandlers:

    def test_first_visit_starts_onboarding(self, mock_tracker):
        from handlers.onboarding import get_onboarding
        mock_tracker.get.return_value = None
        mock_tracker.start.return_value = onboarding_state()

        with patch('handlers.onboarding.get_onboarding.get_tracker', return_value=mock_tracker):
            response = get_onboarding.handler(api_event(), None)

        body = body_of(response)
        assert body['currentStep'] == 1
        assert body['canReceiveOffers'] is False
        assert body['thresholds'] == {'serviceDefined': 2, 'staging': 4, 'live': 5}
        mock_tracker.start.assert_called_once_with('provider-a')

    def test_advance(self, mock_tracker):
        from handlers.onboarding import advance_step
        mock_tracker.advance.return_value = onboarding_state(3, stage=OnboardingStage.SERVICE_DEFINED)

        with patch('handlers.onboarding.advance_step.get_tracker', return_value=mock_tracker):
            ok = advance_step.handler(api_event(body={'step': 3}), None)
            bad = advance_step.handler(api_event(body={'step': 'next'}), None)

        assert body_of(ok)['stageLabel'] == OnboardingStage.SERVICE_DEFINED
        assert bad['statusCode'] == 400
        mock_tracker.advance.assert_called_once_with('provider-a', 3)

    def test_rewind(self, mock_tracker):
        from handlers.onboarding import rewind_step
        mock_tracker.rewind.return_value = onboarding_state(2)

        with patch('handlers.onboarding.rewind_step.get_tracker', return_value=mock_tracker):
            response = rewind_step.handler(api_event(body={'step': 2}), None)

        assert response['statusCode'] == 200
        mock_tracker.rewind.assert_called_once_with('provider-a', 2)

    def test_complete_records_reported_resources(self, mock_tracker):
        from handlers.onboarding import complete_onboarding
        mock_tracker.complete.return_value = onboarding_state(5, True, OnboardingStage.STAGING)

        with patch('handlers.onboarding.complete_onboarding.get_tracker', return_value=mock_tracker):
            response = complete_onboarding.handler(
                api_event(body={'resources': {'documents': 'doc-1', 'package': 'pkg-1'}}), None
            )

        assert body_of(response)['isComplete'] is True
        provider_id, actions = mock_tracker.complete.call_args[0]
        assert [a.name for a in actions] == ['documents', 'package']
        assert actions[0].create(provider_id) == 'doc-1'

    def test_complete_when_locked(self, mock_tracker):
        from handlers.onboarding import complete_onboarding
        mock_tracker.complete.side_effect = OnboardingLocked('already complete')

        with patch('handlers.onboarding.complete_onboarding.get_tracker', return_value=mock_tracker):
            response = complete_onboarding.handler(api_event(body={}), None)

        assert response['statusCode'] == 409


class TestEarningsHandler:

    def report(self):
        return {
            'summary': {
                'totalEarnings': 20000, 'thisWeek': 8000, 'thisMonth': 12000, 'lastMonth': 6000,
                'thisYear': 18000, 'jobCount': 4, 'averagePerJob': 5000,
            },
            'monthly': [{'period': '2026-03', 'amount': 12000, 'jobs': 2, 'avgPerJob': 6000}],
            'payments': [{'transactionId': 'job-1#payout', 'jobId': 'job-1', 'amount': 8000}],
        }

    def test_earnings_for_calling_provider(self):
        from handlers.payouts import get_earnings
        earnings = MagicMock()
        earnings.report.return_value = self.report()
        event = api_event(job_id=None)
        event['queryStringParameters'] = {'limit': '10'}

        with patch('handlers.payouts.get_earnings.get_earnings', return_value=earnings):
            response = get_earnings.handler(event, None)

        assert response['statusCode'] == 200
        body = body_of(response)
        assert body['providerId'] == 'provider-a'
        assert body['summary']['thisWeek'] == 8000
        assert body['display'] == {'totalEarnings': '200.00', 'thisMonth': '120.00', 'averagePerJob': '50.00'}
        assert body['payments'][0]['jobId'] == 'job-1'
        earnings.report.assert_called_once_with('provider-a', history_limit=10, months=12)

    @pytest.mark.parametrize('limit', ['abc', '0', '2.5'])
    def test_bad_limit_is_400(self, limit):
        from handlers.payouts import get_earnings
        earnings = MagicMock()
        event = api_event(job_id=None)
        event['queryStringParameters'] = {'limit': limit}

        with patch('handlers.payouts.get_earnings.get_earnings', return_value=earnings):
            response = get_earnings.handler(event, None)

        assert response['statusCode'] == 400
        earnings.report.assert_not_called()


class TestSettlementRetryHandler:

    def sqs_event(self, *bodies):
        return {'Records': [
            {'messageId': f'm{i}', 'body': body if isinstance(body, str) else json.dumps(body)}
            for i, body in enumerate(bodies)
        ]}

    def message(self, job_id='job-1'):
        return {
            'jobId': job_id,
            'fulfillerId': 'provider-a',
            'requesterId': 'customer-1',
            'payout': {'grossPrice': 10000, 'hours': '1.5', 'hourlyRate': 6667,
                       'platformFee': 2000, 'netPayout': 8000, 'feeRate': '0.20'},
        }

    def test_settles_and_marks_job(self, make_job):
        from handlers.payments import process_settlement_retry as handler_module
        ledger = MagicMock()
        storage = MagicMock()
        storage.conditional_update_status.return_value = UpdateResult(True, make_job(status=JobStatus.COMPLETED))

        with patch.object(handler_module, 'get_ledger', return_value=ledger), \
                patch.object(handler_module, 'get_storage', return_value=storage):
            result = handler_module.handler(self.sqs_event(self.message()), None)

        assert result == {'settled': 1, 'batchItemFailures': []}
        assert ledger.record_settlement.call_args[0][1].net_payout == 8000
        storage.conditional_update_status.assert_called_once_with(
            'job-1', JobStatus.COMPLETED, JobStatus.COMPLETED,
            {'settlementStatus': SettlementStatus.SETTLED},
        )

    def test_failed_messages_are_redelivered(self, make_job):
        from handlers.payments import process_settlement_retry as handler_module
        ledger = MagicMock()
        ledger.record_settlement.side_effect = [CollaboratorUnavailable('throttled'), None]
        storage = MagicMock()
        storage.conditional_update_status.return_value = UpdateResult(True, make_job(status=JobStatus.COMPLETED))

        with patch.object(handler_module, 'get_ledger', return_value=ledger), \
                patch.object(handler_module, 'get_storage', return_value=storage):
            result = handler_module.handler(
                self.sqs_event(self.message('job-1'), self.message('job-2'), 'not json'), None
            )

        assert result['settled'] == 1
        assert result['batchItemFailures'] == [{'itemIdentifier': 'm0'}, {'itemIdentifier': 'm2'}]

    def test_job_not_completed_yet_is_retried(self, make_job):
        from handlers.payments import process_settlement_retry as handler_module
        storage = MagicMock()
        storage.conditional_update_status.return_value = UpdateResult(
            False, make_job(status=JobStatus.IN_PROGRESS)
        )

        with patch.object(handler_module, 'get_ledger', return_value=MagicMock()), \
                patch.object(handler_module, 'get_storage', return_value=storage):
            result = handler_module.handler(self.sqs_event(self.message()), None)

        assert result['batchItemFailures'] == [{'itemIdentifier': 'm0'}]
