"""Tests for the Bedrock, OpenSearch and SQS client wrappers with stubbed AWS clients."""

import io
import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from opensearchpy.exceptions import NotFoundError as OpenSearchNotFoundError

from memory_mesh.models.core import IngestionJob
from memory_mesh.utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from memory_mesh.utils.bedrock_llm import BedrockLLM, classify_provider_error
from memory_mesh.utils.config import BedrockEmbedConfig, BedrockLLMConfig, OpenSearchConfig, QueueConfig
from memory_mesh.utils.errors import FatalProviderError, TransientProviderError
from memory_mesh.utils.opensearch_client import OpenSearchClient, OpenSearchError, score_to_cosine
from memory_mesh.utils.sqs_queue import SqsIngestionQueue, SqsQueueError

from .conftest import SleepRecorder


def _client_error(code, status, operation='Converse'):
    return ClientError({'Error': {'Code': code, 'Message': f'{code} raised'}, 'ResponseMetadata': {'HTTPStatusCode': status}},
                       operation)


def _converse_response(text):
    return {'output': {'message': {'content': [{'text': text}]}}, 'usage': {'inputTokens': 10, 'outputTokens': 5}}


@pytest.fixture
def llm_client():
    return MagicMock()


@pytest.fixture
def llm(llm_client):
    config = BedrockLLMConfig(region='us-east-1', model_id='anthropic.claude-test', max_tokens=512, temperature=0.2,
                              connect_timeout=5, read_timeout=30)
    return BedrockLLM(config, client=llm_client)


class TestClassifyProviderError:

    @pytest.mark.parametrize('code, status', [
        ('ThrottlingException', 429),
        ('ServiceUnavailableException', 503),
        ('ModelNotReadyException', 400),
        ('InternalServerException', 500),
    ])
    def test_transient(self, code, status):
        error = classify_provider_error(_client_error(code, status))
        assert isinstance(error, TransientProviderError)
        assert error.status_code == status

    def test_validation_is_fatal(self):
        error = classify_provider_error(_client_error('ValidationException', 400))
        assert isinstance(error, FatalProviderError)
        assert error.status_code == 400

    def test_connection_failure_is_transient(self):
        error = classify_provider_error(EndpointConnectionError(endpoint_url='https://bedrock.example.com'))
        assert isinstance(error, TransientProviderError)

    def test_overload_message_is_transient(self):
        assert isinstance(classify_provider_error(RuntimeError('Model is overloaded')), TransientProviderError)
        assert isinstance(classify_provider_error(RuntimeError('bad prompt')), FatalProviderError)


class TestBedrockLLM:

    def test_summarize(self, llm, llm_client):
        llm_client.converse.return_value = _converse_response('  A short summary.  ')

        assert llm.summarize('long text', {'title': 'Page'}) == 'A short summary.'
        kwargs = llm_client.converse.call_args.kwargs
        assert kwargs['modelId'] == 'anthropic.claude-test'
        assert 'Title: Page' in kwargs['messages'][0]['content'][0]['text']

    def test_empty_summary_is_fatal(self, llm, llm_client):
        llm_client.converse.return_value = _converse_response('   ')
        with pytest.raises(FatalProviderError):
            llm.summarize('long text')

    def test_throttling_surfaces_as_transient(self, llm, llm_client):
        llm_client.converse.side_effect = _client_error('ThrottlingException', 429)
        with pytest.raises(TransientProviderError):
            llm.summarize('long text')

    def test_extract_metadata(self, llm, llm_client):
        llm_client.converse.return_value = _converse_response('```json\n{"topics": ["search"], "importance": 7}\n```')
        assert llm.extract_metadata('text', 'summary') == {'topics': ['search'], 'importance': 7}

    def test_extract_metadata_unparseable(self, llm, llm_client):
        llm_client.converse.return_value = _converse_response('no json here')
        assert llm.extract_metadata('text', 'summary') == {}

    def test_verify_relation(self, llm, llm_client):
        llm_client.converse.return_value = _converse_response('{"related": true, "reason": "same project"}')
        assert llm.verify_relation({'title': 'a'}, {'title': 'b'}, 0.4, 0.9) is True

        llm_client.converse.return_value = _converse_response('{"related": false}')
        assert llm.verify_relation({'title': 'a'}, {'title': 'b'}, 0.4) is False

    def test_health_check(self, llm, llm_client):
        llm_client.converse.return_value = _converse_response('OK')
        assert llm.health_check() is True
        llm_client.converse.side_effect = _client_error('AccessDeniedException', 403)
        assert llm.health_check() is False


def _embedding_body(vector):
    return {'body': io.BytesIO(json.dumps({'embedding': vector}).encode('utf-8'))}


class TestBedrockEmbed:

    def _embedder(self, client, model_id='amazon.titan-embed-text-v2:0', dimension=3, sleep=None):
        config = BedrockEmbedConfig(region='us-east-1', model_id=model_id, dimension=dimension, retry_attempts=3,
                                    retry_delay=1.0)
        return BedrockEmbed(config, client=client, sleep=sleep or SleepRecorder())

    def test_titan_request(self):
        client = MagicMock()
        client.invoke_model.return_value = _embedding_body([0.1, 0.2, 0.3])

        assert self._embedder(client).embed_document('hello') == [0.1, 0.2, 0.3]
        body = json.loads(client.invoke_model.call_args.kwargs['body'])
        assert body == {'inputText': 'hello', 'dimensions': 3, 'normalize': True}

    def test_cohere_request(self):
        client = MagicMock()
        vector = [0.0] * 1024
        client.invoke_model.return_value = {'body': io.BytesIO(json.dumps({'embeddings': [vector]}).encode('utf-8'))}

        embedder = self._embedder(client, model_id='cohere.embed-english-v3', dimension=1024)

        assert len(embedder.embed_query('hello')) == 1024
        assert json.loads(client.invoke_model.call_args.kwargs['body'])['input_type'] == 'search_query'

    def test_retries_then_succeeds(self):
        client = MagicMock()
        client.invoke_model.side_effect = [_client_error('ThrottlingException', 429, 'InvokeModel'),
                                           _embedding_body([1.0, 0.0, 0.0])]
        sleep = SleepRecorder()

        assert self._embedder(client, sleep=sleep).embed_query('hello') == [1.0, 0.0, 0.0]
        assert len(sleep.delays) == 1

    def test_gives_up_after_retry_attempts(self):
        client = MagicMock()
        client.invoke_model.side_effect = _client_error('ThrottlingException', 429, 'InvokeModel')

        with pytest.raises(BedrockEmbedError):
            self._embedder(client).embed_document('hello')
        assert client.invoke_model.call_count == 3

    def test_dimension_mismatch(self):
        client = MagicMock()
        client.invoke_model.return_value = _embedding_body([0.1, 0.2])
        with pytest.raises(BedrockEmbedError):
            self._embedder(client).embed_document('hello')

    def test_empty_text_and_unknown_model(self):
        with pytest.raises(BedrockEmbedError):
            self._embedder(MagicMock()).embed_document('  ')
        with pytest.raises(BedrockEmbedError):
            self._embedder(MagicMock(), model_id='acme.embed').embed_document('hello')


class TestOpenSearchClient:

    @pytest.fixture
    def os_client(self):
        return MagicMock()

    @pytest.fixture
    def index(self, os_client):
        config = OpenSearchConfig(endpoint='https://search.example.com', port=443, region='us-east-1', service='es',
                                  index_name='memories', dimension=3)
        return OpenSearchClient(config, client=os_client)

    @pytest.mark.parametrize('score, cosine', [(1.0, 1.0), (2 / 3, 0.5), (0.5, 0.0), (0.4, 0.0), (0.0, 0.0)])
    def test_score_to_cosine(self, score, cosine):
        assert score_to_cosine(score) == pytest.approx(cosine)

    def test_query_vectors_filters_by_owner_and_converts_scores(self, index, os_client):
        os_client.search.return_value = {'hits': {'hits': [
            {'_id': 'b', '_score': 0.8, '_source': {'memory_id': 'b'}},
            {'_id': 'a', '_score': 1.0, '_source': {'memory_id': 'a'}},
        ]}}

        hits = index.query_vectors([1.0, 0.0, 0.0], 'alice', limit=5)

        assert [memory_id for memory_id, _ in hits] == ['a', 'b']
        assert hits[1][1] == pytest.approx(0.75)
        body = os_client.search.call_args.kwargs['body']
        assert body['query']['bool']['filter'] == [{'term': {'owner_id': 'alice'}}]
        assert body['query']['bool']['must'][0]['knn']['embedding']['k'] == 5

    def test_upsert_checks_dimension(self, index, os_client):
        with pytest.raises(OpenSearchError):
            index.upsert_vector('m1', 'alice', [1.0, 0.0])
        os_client.index.assert_not_called()

    def test_upsert_uses_memory_id_as_document_id(self, index, os_client):
        os_client.index.return_value = {'result': 'created'}
        assert index.upsert_vector('m1', 'alice', [1.0, 0.0, 0.0]) is True
        assert os_client.index.call_args.kwargs['id'] == 'm1'

    def test_get_vector_missing(self, index, os_client):
        os_client.get.side_effect = OpenSearchNotFoundError(404, 'not_found', {})
        assert index.get_vector('m1') is None

    def test_search_failure_raises(self, index, os_client):
        os_client.search.side_effect = RuntimeError('connection refused')
        with pytest.raises(OpenSearchError):
            index.query_vectors([1.0, 0.0, 0.0], 'alice')


class TestSqsIngestionQueue:

    @pytest.fixture
    def sqs(self):
        return MagicMock()

    def _queue(self, sqs, dead_letter_queue_url='https://sqs.example.com/dlq'):
        config = QueueConfig(region='us-east-1', queue_url='https://sqs.example.com/jobs',
                             dead_letter_queue_url=dead_letter_queue_url, concurrency=2, wait_time_seconds=20,
                             visibility_timeout=900, max_messages=1)
        return SqsIngestionQueue(config, client=sqs)

    def test_requires_queue_url(self, sqs):
        config = QueueConfig(region='us-east-1', queue_url='', dead_letter_queue_url='', concurrency=1,
                             wait_time_seconds=20, visibility_timeout=900, max_messages=1)
        with pytest.raises(SqsQueueError):
            SqsIngestionQueue(config, client=sqs)

    def test_enqueue(self, sqs):
        job_id = self._queue(sqs).enqueue('alice', 'text', {'title': 'T'})

        body = json.loads(sqs.send_message.call_args.kwargs['MessageBody'])
        assert body == {'job_id': job_id, 'owner_id': 'alice', 'raw_text': 'text', 'metadata': {'title': 'T'}}

    def test_receive_parses_jobs_and_dead_letters_malformed(self, sqs):
        sqs.receive_message.return_value = {'Messages': [
            {'MessageId': 'm1', 'ReceiptHandle': 'r1', 'Attributes': {'ApproximateReceiveCount': '2'},
             'Body': json.dumps({'job_id': 'j1', 'owner_id': 'alice', 'raw_text': 'text', 'metadata': {}})},
            {'MessageId': 'm2', 'ReceiptHandle': 'r2', 'Body': 'not json'},
        ]}

        jobs = self._queue(sqs).receive()

        assert [(job.job_id, job.attempt, job.receipt) for job in jobs] == [('j1', 2, 'r1')]
        assert sqs.send_message.call_args.kwargs['QueueUrl'] == 'https://sqs.example.com/dlq'
        sqs.delete_message.assert_called_once_with(QueueUrl='https://sqs.example.com/jobs', ReceiptHandle='r2')

    def test_ack_deletes_message(self, sqs):
        self._queue(sqs).ack(IngestionJob(job_id='j1', owner_id='alice', raw_text='text', receipt='r1'))
        sqs.delete_message.assert_called_once_with(QueueUrl='https://sqs.example.com/jobs', ReceiptHandle='r1')

    def test_transient_failure_left_for_redelivery(self, sqs):
        self._queue(sqs).fail(IngestionJob(job_id='j1', owner_id='alice', raw_text='text', receipt='r1'),
                              RuntimeError('boom'), fatal=False)
        sqs.send_message.assert_not_called()
        sqs.delete_message.assert_not_called()

    def test_fatal_failure_moves_to_dead_letter_queue(self, sqs):
        self._queue(sqs).fail(IngestionJob(job_id='j1', owner_id='alice', raw_text='text', receipt='r1'),
                              FatalProviderError('exhausted', attempts=8), fatal=True)

        kwargs = sqs.send_message.call_args.kwargs
        assert kwargs['QueueUrl'] == 'https://sqs.example.com/dlq'
        assert json.loads(kwargs['MessageBody'])['job_id'] == 'j1'
        sqs.delete_message.assert_called_once_with(QueueUrl='https://sqs.example.com/jobs', ReceiptHandle='r1')

    def test_fatal_failure_without_dead_letter_queue_is_left_in_place(self, sqs):
        self._queue(sqs, dead_letter_queue_url='').fail(
            IngestionJob(job_id='j1', owner_id='alice', raw_text='text', receipt='r1'), RuntimeError('boom'), fatal=True)
        sqs.send_message.assert_not_called()
        sqs.delete_message.assert_not_called()

    def test_receive_error(self, sqs):
        sqs.receive_message.side_effect = _client_error('AWS.SimpleQueueService.NonExistentQueue', 400, 'ReceiveMessage')
        with pytest.raises(SqsQueueError):
            self._queue(sqs).receive()
