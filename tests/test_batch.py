"""Unit tests for multipart batch encoding and parsing."""
import json

from gcal.batch import (
    BatchRequestPart,
    boundary_from_content_type,
    correlate_parts,
    encode_batch_request,
    parse_multipart,
)


def build_response(parts, boundary='batch_resp', newline='\r\n'):
    """Assemble a multipart/mixed batch response body."""
    lines = []
    for content_id, status, body in parts:
        lines.append(f"--{boundary}")
        lines.append("Content-Type: application/http")
        lines.append(f"Content-ID: <{content_id}>")
        lines.append("")
        lines.append(f"HTTP/1.1 {status}")
        lines.append("Content-Type: application/json; charset=UTF-8")
        lines.append("")
        lines.append(body)
    lines.append(f"--{boundary}--")
    lines.append("")
    return newline.join(lines)


class TestEncodeBatchRequest:
    """Test cases for request encoding."""

    def test_parts_carry_sequential_content_ids(self):
        requests = [
            BatchRequestPart('POST', '/calendar/v3/calendars/primary/events', {'summary': 'A'}),
            BatchRequestPart('DELETE', '/calendar/v3/calendars/primary/events/abc'),
        ]

        body = encode_batch_request(requests, 'batch_xyz').decode('utf-8')

        assert body.count('--batch_xyz\r\n') == 2
        assert body.endswith('--batch_xyz--\r\n')
        assert 'Content-ID: <item0>' in body
        assert 'Content-ID: <item1>' in body
        assert 'POST /calendar/v3/calendars/primary/events\r\n' in body
        assert 'DELETE /calendar/v3/calendars/primary/events/abc\r\n' in body
        assert json.dumps({'summary': 'A'}) in body

    def test_only_bodies_get_json_content_type(self):
        requests = [BatchRequestPart('DELETE', '/calendar/v3/calendars/primary/events/abc')]

        body = encode_batch_request(requests, 'b').decode('utf-8')

        assert 'application/json' not in body


class TestBoundaryFromContentType:
    """Test cases for boundary extraction."""

    def test_extracts_boundary(self):
        assert boundary_from_content_type('multipart/mixed; boundary=batch_abc') == 'batch_abc'

    def test_extracts_quoted_boundary(self):
        assert boundary_from_content_type('multipart/mixed; boundary="batch_abc"') == 'batch_abc'

    def test_missing_boundary(self):
        assert boundary_from_content_type('application/json') is None
        assert boundary_from_content_type(None) is None


class TestParseMultipart:
    """Test cases for response parsing and correlation."""

    def test_scrambled_parts_are_correlated_by_content_id(self):
        body = build_response([
            ('response-item2', '200 OK', '{"id": "c"}'),
            ('response-item0', '200 OK', '{"id": "a"}'),
            ('response-item1', '200 OK', '{"id": "b"}'),
        ])

        parts = correlate_parts(parse_multipart(body, 'batch_resp'))

        assert sorted(parts) == [0, 1, 2]
        assert parts[0].json() == {'id': 'a'}
        assert parts[1].json() == {'id': 'b'}
        assert parts[2].json() == {'id': 'c'}

    def test_nested_status_line_and_headers_are_stripped(self):
        body = build_response([('response-item0', '404 Not Found', '{"error": {"code": 404}}')])

        part = parse_multipart(body, 'batch_resp')[0]

        assert part.status == 404
        assert part.body == '{"error": {"code": 404}}'
        assert part.header('content-id') == '<response-item0>'

    def test_lf_only_response(self):
        body = build_response(
            [('response-item0', '200 OK', '{"id": "a"}')], newline='\n'
        )

        parts = correlate_parts(parse_multipart(body, 'batch_resp'))

        assert parts[0].status == 200
        assert parts[0].json() == {'id': 'a'}

    def test_empty_nested_body(self):
        body = (
            "--b\r\n"
            "Content-Type: application/http\r\n"
            "Content-ID: <response-item0>\r\n"
            "\r\n"
            "HTTP/1.1 204 No Content\r\n"
            "\r\n"
            "\r\n"
            "--b--\r\n"
        )

        part = parse_multipart(body, 'b')[0]

        assert part.status == 204
        assert part.body == ''

    def test_unmatched_content_id_is_dropped(self):
        body = build_response([
            ('response-item0', '200 OK', '{"id": "a"}'),
            ('something-else', '200 OK', '{"id": "x"}'),
        ])

        parts = correlate_parts(parse_multipart(body, 'batch_resp'))

        assert list(parts) == [0]

    def test_preamble_and_epilogue_are_ignored(self):
        body = "preamble\r\n" + build_response([('response-item0', '200 OK', '{}')])

        parts = parse_multipart(body, 'batch_resp')

        assert len(parts) == 1
