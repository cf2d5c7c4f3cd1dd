'''
Module to access information from the LINZ geodetic database.

Retrieves and decodes the JSON summary data for a mark from the geodetic
database web service.  Marks are held in memory once retrieved, and can
optionally be saved in a persistent SQLite file cache to reduce repeated
requests to the service.

Synopsis:

    from LINZ.Geodetic import gdb

    # Use a persistent local mark cache
    gdb.setOptions(useCache=True,filename='~/.gdbjsoncache')

    # Retrieve the data for mark 'ABCD'
    markdata=gdb.get('ABCD')
    coord=markdata['coordinate']

'''

import json
import logging
import os
import re
import sqlite3
import threading
from collections import namedtuple
from contextlib import closing
from http.client import HTTPException
from urllib.parse import quote
from urllib.request import urlopen

_logger=logging.getLogger(__name__)

GDB_URL='https://www.geodesy.linz.govt.nz/api/gdbweb/mark?&code={code}'
LEGACY_GDB_URL='http://www.linz.govt.nz/gdb?mode=js&code={code}'

DEFAULT_CACHE_FILE='~/.gdbjsoncache'
DEFAULT_EXPIRY_HOURS=6
DEFAULT_TIMEOUT=15

CACHE_HIT=0
CACHE_MISS=1
CACHE_DISABLED=2
CACHE_ERROR=3

MARK_FOUND=0
MARK_NOT_FOUND=1
MARK_CONNECTION_FAILED=2
MARK_INVALID_CODE=3
MARK_DECODE_ERROR=4

CacheLookup=namedtuple('CacheLookup','status json')
MarkResult=namedtuple('MarkResult','status code mark error')

class GdbError( RuntimeError ): pass
class InvalidCode( GdbError, ValueError ): pass
class ConnectionFailed( GdbError ): pass
class MarkNotFound( GdbError, ValueError ): pass
class MarkDecodeError( GdbError, ValueError ): pass

_codere=re.compile(r'\w{4}')

def _checkPositive( name, value ):
    try:
        value=float(value)
    except (TypeError,ValueError):
        raise ValueError('{0} must be a number: {1!r}'.format(name,value))
    if not value > 0:
        raise ValueError('{0} must be positive: {1!r}'.format(name,value))
    return value

def expandFilename( filename ):
    '''
    Replace a leading ~ in a filename with the HOME, APPDATA, or TEMP
    environment variable (the first of these that is set).
    '''
    if filename.startswith('~'):
        home=os.environ.get('HOME') or os.environ.get('APPDATA') or os.environ.get('TEMP')
        if home:
            filename=home+filename[1:]
    return filename

def checkCode( code ):
    '''
    Check that code is a valid geodetic code (four word characters) and
    return it in upper case.  Raises InvalidCode if it is not.
    '''
    if isinstance(code,str):
        normalized=code.upper()
        if _codere.fullmatch(normalized):
            return normalized
    raise InvalidCode('{0} is not a valid geodetic code'.format(code))


class FileCache:
    '''
    Persistent store of the raw JSON for marks in an SQLite database.  Rows
    older than expiryHours are deleted each time the cache is read.

    Errors from the database are never raised.  lookup and store return a
    status (CACHE_HIT, CACHE_MISS, CACHE_DISABLED, CACHE_ERROR) so that callers
    can tell a failing cache from an empty one.
    '''

    def __init__( self, filename=DEFAULT_CACHE_FILE, useCache=False, expiryHours=DEFAULT_EXPIRY_HOURS ):
        self.filename=filename
        self.useCache=useCache
        self.expiryHours=expiryHours

    @property
    def filename( self ): return self._filename

    @filename.setter
    def filename( self, filename ): self._filename=expandFilename(str(filename))

    @property
    def expiryHours( self ): return self._expiryHours

    @expiryHours.setter
    def expiryHours( self, hours ): self._expiryHours=_checkPositive('expiryHours',hours)

    def _connect( self ):
        return closing(sqlite3.connect(self._filename))

    def _expiryOffset( self ):
        return '-{0:.6f} hours'.format(self._expiryHours)

    def _deleteExpired( self, db ):
        cur=db.execute("delete from gdb_json where cachedate < datetime('now',?)",
                       (self._expiryOffset(),))
        return cur.rowcount

    def lookup( self, code ):
        '''
        Return a CacheLookup(status,json) for the code.  json is only set if
        the status is CACHE_HIT.
        '''
        if not self.useCache:
            return CacheLookup(CACHE_DISABLED,None)
        if not os.path.exists(self._filename):
            return CacheLookup(CACHE_MISS,None)
        code=code.upper()
        _logger.debug('Checking cache for %s',code)
        try:
            with self._connect() as db:
                self._deleteExpired(db)
                db.commit()
                row=db.execute('select json from gdb_json where code=?',(code,)).fetchone()
        except (sqlite3.Error,OSError) as e:
            _logger.debug('Cannot read %s from cache %s: %s',code,self._filename,e)
            return CacheLookup(CACHE_ERROR,None)
        if row is None or not row[0]:
            return CacheLookup(CACHE_MISS,None)
        return CacheLookup(CACHE_HIT,row[0])

    def store( self, code, markdata ):
        '''
        Save the raw JSON for a code, replacing any existing entry
        '''
        if not self.useCache:
            return CACHE_DISABLED
        code=code.upper()
        _logger.debug('Saving %s to cache',code)
        try:
            with self._connect() as db:
                db.execute('''
                    create table if not exists gdb_json(
                       code varchar(4) not null primary key,
                       cachedate datetime not null,
                       json text not null)''')
                db.execute('''
                    insert or replace into gdb_json(code,cachedate,json)
                    values (?,datetime('now'),?)''',(code,markdata))
                db.commit()
        except (sqlite3.Error,OSError) as e:
            _logger.debug('Cannot save %s to cache %s: %s',code,self._filename,e)
            return CACHE_ERROR
        return CACHE_HIT

    def purge( self ):
        '''
        Delete expired entries from the cache.  Returns the number deleted.
        '''
        if not self.useCache or not os.path.exists(self._filename):
            return 0
        try:
            with self._connect() as db:
                count=self._deleteExpired(db)
                db.commit()
        except (sqlite3.Error,OSError) as e:
            _logger.debug('Cannot purge cache %s: %s',self._filename,e)
            return 0
        return count

    def clear( self ):
        '''
        Delete all entries from the cache
        '''
        if not os.path.exists(self._filename):
            return
        try:
            with self._connect() as db:
                db.execute('delete from gdb_json')
                db.commit()
        except (sqlite3.Error,OSError) as e:
            _logger.debug('Cannot clear cache %s: %s',self._filename,e)


class Fetcher:
    '''
    Retrieves the raw JSON for a mark from the geodetic database.  Once a
    request has failed no further requests are attempted - every later fetch
    raises ConnectionFailed immediately until reset is called.
    '''

    def __init__( self, url=GDB_URL, timeout=DEFAULT_TIMEOUT, opener=None ):
        self.url=url
        self.timeout=timeout
        self._opener=opener or urlopen
        self._lock=threading.Lock()
        self._failed=False

    @property
    def url( self ): return self._url

    @url.setter
    def url( self, url ):
        if '{code}' not in url:
            raise ValueError('Geodetic database url must contain {{code}}: {0}'.format(url))
        self._url=url

    @property
    def timeout( self ): return self._timeout

    @timeout.setter
    def timeout( self, timeout ): self._timeout=_checkPositive('timeout',timeout)

    @property
    def failed( self ): return self._failed

    def reset( self ):
        with self._lock:
            self._failed=False

    def fetch( self, code ):
        '''
        Return the whitespace trimmed response for the code.  Raises
        ConnectionFailed if the database cannot be reached.
        '''
        if self._failed:
            raise ConnectionFailed('Cannot connect to geodetic database')
        url=self._url.replace('{code}',quote(code))
        _logger.debug('Retrieving %s',url)
        try:
            with closing(self._opener(url,timeout=self._timeout)) as response:
                status=getattr(response,'status',None) or 200
                if not 200 <= status < 300:
                    raise HTTPException('HTTP status {0}'.format(status))
                charset=None
                headers=getattr(response,'headers',None)
                if headers is not None and hasattr(headers,'get_content_charset'):
                    charset=headers.get_content_charset()
                markdata=response.read().decode(charset or 'utf-8')
        except (OSError,HTTPException,ValueError,LookupError) as e:
            with self._lock:
                self._failed=True
            _logger.warning('Cannot connect to geodetic database at %s: %s',url,e)
            raise ConnectionFailed('Cannot connect to geodetic database: {0}'.format(e)) from e
        return markdata.strip()


class Client:
    '''
    Geodetic database client holding the in-memory mark cache, an optional
    persistent file cache, and the connection to the database.

    Options are as for setOptions.  An opener function (called as
    opener(url,timeout=timeout) and returning a response) can be supplied to
    replace urllib.request.urlopen.
    '''

    def __init__( self, opener=None, **options ):
        self._fileCache=FileCache()
        self._fetcher=Fetcher(opener=opener)
        self._lock=threading.Lock()
        self._marks={}
        self.setOptions(**options)

    @property
    def fileCache( self ): return self._fileCache

    @property
    def fetcher( self ): return self._fetcher

    def setOptions( self, filename=None, useCache=None, expiryHours=None, timeout=None, url=None ):
        '''
        Set up the client.  Options that are not specified keep their
        current values.  Options are:

            filename     the SQLite file used to cache mark data.  A leading ~
                         is replaced with the HOME, APPDATA, or TEMP directory
                         (default ~/.gdbjsoncache)
            useCache     if True then the persistent file cache is used
                         (default False)
            expiryHours  the time in hours for which cached mark data is
                         considered valid (default 6)
            timeout      the timeout in seconds for requests to the geodetic
                         database (default 15).  Once a request has failed no
                         other requests are attempted.
            url          the geodetic database url, with {code} in place of
                         the mark code
        '''
        if filename is not None:
            self._fileCache.filename=filename
        if useCache is not None:
            self._fileCache.useCache=bool(useCache)
        if expiryHours is not None:
            self._fileCache.expiryHours=expiryHours
        if timeout is not None:
            self._fetcher.timeout=timeout
        if url is not None:
            self._fetcher.url=url

    def clearMemoryCache( self ):
        with self._lock:
            self._marks.clear()

    def get( self, code, cache=True ):
        '''
        Retrieve information for a geodetic mark.  The data is returned as the
        decoded JSON from the geodetic database (usually a dict).

        If cache is True then retrieved marks are saved in memory - if the same
        mark is requested again it is returned from memory.  The persistent file
        cache is used regardless of this if it is enabled.

        Raises InvalidCode, ConnectionFailed, MarkNotFound, or MarkDecodeError.
        '''
        code=checkCode(code)
        if cache:
            with self._lock:
                if code in self._marks:
                    return self._marks[code]
        markdata=self._fileCache.lookup(code).json
        if not markdata:
            markdata=self._fetcher.fetch(code)
            self._fileCache.store(code,markdata)
        if markdata == 'null':
            raise MarkNotFound('{0} is not an existing geodetic mark'.format(code))
        try:
            mark=json.loads(markdata)
        except ValueError as e:
            raise MarkDecodeError('Invalid data for {0} from geodetic database: {1}'.format(code,e)) from e
        if cache:
            with self._lock:
                mark=self._marks.setdefault(code,mark)
        return mark

    def lookup( self, code, cache=True ):
        '''
        As for get, but returns a MarkResult(status,code,mark,error) rather
        than raising an exception.  status is one of MARK_FOUND, MARK_NOT_FOUND,
        MARK_CONNECTION_FAILED, MARK_INVALID_CODE, MARK_DECODE_ERROR.
        '''
        try:
            mark=self.get(code,cache)
        except InvalidCode as e:
            return MarkResult(MARK_INVALID_CODE,code,None,e)
        except MarkNotFound as e:
            return MarkResult(MARK_NOT_FOUND,code.upper(),None,e)
        except ConnectionFailed as e:
            return MarkResult(MARK_CONNECTION_FAILED,code.upper(),None,e)
        except MarkDecodeError as e:
            return MarkResult(MARK_DECODE_ERROR,code.upper(),None,e)
        return MarkResult(MARK_FOUND,code.upper(),mark,None)


_client=Client()

def client():
    return _client

def resetClient( **options ):
    '''
    Replace the module client with a new one, discarding the memory cache
    and any connection failure.
    '''
    global _client
    _client=Client(**options)
    return _client

def setOptions( **options ):
    _client.setOptions(**options)

setupCache=setOptions

def get( code, cache=True ):
    return _client.get(code,cache)

getMark=get

def lookup( code, cache=True ):
    return _client.lookup(code,cache)
