import email.message
import os.path
import sqlite3
import sys
from contextlib import closing
from urllib.parse import parse_qs, urlparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

TEST_URL = "http://gdb.example.test/mark?code={code}"

MARKS = {
    "ABCD": '{"name":"ABCD","coordinate":{"lat":-41.3,"lon":174.8}}',
    "EFGH": '{"name":"EFGH","coordinate":{"lat":-36.8,"lon":174.7}}',
    "WXYZ": "null",
}


class FakeResponse:
    """
    Minimal stand in for the response returned by urllib.request.urlopen
    """

    def __init__(self, body, status=200, charset="utf-8"):
        self.status = status
        self.headers = email.message.Message()
        self.headers["Content-Type"] = "application/json; charset=" + charset
        self._body = body if isinstance(body, bytes) else body.encode(charset)
        self.closed = False

    def read(self):
        return self._body

    def close(self):
        self.closed = True


class FakeOpener:
    """
    Callable replacing urlopen.  Responds with the body in marks for the
    code in the url, or "null" for unknown codes.  Records each url requested.
    """

    def __init__(self, marks=None, status=200):
        self.marks = MARKS if marks is None else marks
        self.status = status
        self.urls = []
        self.timeouts = []
        self.responses = []

    def __call__(self, url, timeout=None):
        self.urls.append(url)
        self.timeouts.append(timeout)
        code = parse_qs(urlparse(url).query)["code"][0]
        response = FakeResponse(self.marks.get(code, "null"), status=self.status)
        self.responses.append(response)
        return response

    @property
    def calls(self):
        return len(self.urls)


def cacheRows(filename):
    # Return the gdb_json table as a dict code -> (cachedate, json)
    with closing(sqlite3.connect(filename)) as db:
        rows = db.execute("select code, cachedate, json from gdb_json").fetchall()
    return {r[0]: (r[1], r[2]) for r in rows}


def writeCacheRow(filename, code, markdata, ageHours=0):
    # Write a row directly into the cache file with a cachedate ageHours old
    with closing(sqlite3.connect(filename)) as db:
        db.execute(
            """create table if not exists gdb_json(
                 code varchar(4) not null primary key,
                 cachedate datetime not null,
                 json text not null)"""
        )
        db.execute(
            "insert or replace into gdb_json(code,cachedate,json) "
            "values (?,datetime('now',?),?)",
            (code, "-{0} hours".format(ageHours), markdata),
        )
        db.commit()
