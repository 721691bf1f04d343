# Copyright (C) 2022 Jesse P. Johnson <jpj6652@gmail.com>
# Copyright (C) 2012 W. Trevor King <wking@tremily.us>
#
# This file is part of gpg-mailer.
#
# gpg-mailer is free software: you can redistribute it and/or modify it under the
# terms of the GNU General Public License as published by the Free Software
# Foundation, either version 3 of the License, or (at your option) any later
# version.
#
# gpg-mailer is distributed in the hope that it will be useful, but WITHOUT ANY
# WARRANTY; without even the implied warranty of MERCHANTABILITY or FITNESS FOR
# A PARTICULAR PURPOSE.  See the GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License along with
# gpg-mailer.  If not, see <http://www.gnu.org/licenses/>.

"""Run OpenPGP operations through ``gpgme-tool`` over Assuan.

An :class:`Engine` is a short-lived session built from the mailer's options.
Each command it issues opens its own Assuan connection, either by spawning
``gpgme-tool --server`` or by connecting to ``socket_path``, and tears it down
before returning.  Failures of any kind leave this module as
:class:`EngineError`.
"""

import configparser
import logging
import os
import shutil
import subprocess
import threading
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)
from xml.etree import ElementTree

from assuan.client import AssuanClient
from assuan.common import Request
from assuan.exception import AssuanError

from .key import Key, parse_import_result, parse_keylist
from .signature import ERROR_CODE_MASK, verify_result_signatures

if TYPE_CHECKING:
    from configparser import ConfigParser
    from .signature import Signature

log = logging.getLogger(__name__)

BINARY = 'gpgme-tool'

# seconds to wait for pipe threads once the connection is gone
JOIN_TIMEOUT = 5

SIGN_MODE_NORMAL = 'normal'
SIGN_MODE_CLEAR = 'clear'
SIGN_MODE_DETACH = 'detach'

# GPG_ERR_* in gpg-error.h
GPG_ERR_GENERAL = 1
GPG_ERR_NO_PUBKEY = 9
GPG_ERR_BAD_PASSPHRASE = 11
GPG_ERR_NO_SECKEY = 17
GPG_ERR_UNUSABLE_PUBKEY = 53
GPG_ERR_UNUSABLE_SECKEY = 54
GPG_ERR_NO_DATA = 58
GPG_ERR_BAD_DATA = 89
GPG_ERR_INV_ENGINE = 150


class EngineError(Exception):
    """A failure reported by, or while talking to, the OpenPGP engine."""

    def __init__(self, message: str, code: int = GPG_ERR_GENERAL) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


def get_options(config: 'ConfigParser') -> Dict[str, Any]:
    r"""Retrieve engine options from the ``[gpg]`` section of a config file.

    >>> from configparser import ConfigParser
    >>> config = ConfigParser()
    >>> config.read_string(
    ...     '\n'.join(
    ...         [
    ...             '[gpg]',
    ...             'homedir: ~/.gnupg',
    ...             'always-trust: no',
    ...         ]
    ...     )
    ... )
    >>> get_options(config)
    {'homedir': '~/.gnupg', 'always_trust': False}

    >>> get_options(ConfigParser())
    {}
    """
    options: Dict[str, Any] = {}
    if not config.has_section('gpg'):
        return options
    for name in ['homedir', 'binary', 'gpg-binary', 'socket-path']:
        try:
            options[name.replace('-', '_')] = config.get('gpg', name)
        except configparser.NoOptionError:
            pass
    for name in ['always-trust', 'debug']:
        try:
            options[name.replace('-', '_')] = config.getboolean('gpg', name)
        except configparser.NoOptionError:
            pass
    return options


def get_client(
    socket_path: Optional[str] = None,
    binary: str = BINARY,
    gpg_binary: Optional[str] = None,
    homedir: Optional[str] = None,
    pass_fds: Sequence[int] = (),
    debug: bool = False,
) -> Tuple[AssuanClient, Optional[subprocess.Popen]]:
    """Get an assuan client talking to ``gpgme-tool``."""
    client = AssuanClient(name='gpg-mailer', close_on_disconnect=True)
    if debug:
        _debug_assuan()
    if socket_path:
        client.connect(socket_path=socket_path)
        return (client, None)

    command = [binary, '--server']
    if gpg_binary:
        command.append(f"--gpg-binary={gpg_binary}")
    env = dict(os.environ)
    if homedir:
        env['GNUPGHOME'] = homedir
    log.debug('spawn %s', ' '.join(command))
    process = subprocess.Popen(
        command,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        env=env,
        close_fds=True,
        pass_fds=tuple(pass_fds),
    )
    client.intake = process.stdout
    client.outtake = process.stdin
    client.connect()
    return (client, process)


def disconnect(
    client: AssuanClient, process: Optional[subprocess.Popen] = None
) -> None:
    """Disconnect from the assuan server."""
    try:
        client.make_request(Request('BYE'))
    except Exception as err:
        log.warning('error while saying goodbye: %s', err)
    try:
        client.disconnect()
    except OSError as err:
        log.warning('error while disconnecting: %s', err)
    if process is not None:
        status = process.wait()
        if status:
            log.warning('%s exited with status %d', process.args[0], status)


def hello(client: AssuanClient, armor: bool = True) -> None:
    client.get_responses()  # get initial 'OK' from server
    client.make_request(Request('ARMOR', 'true' if armor else 'false'))


def _read(desc: int, buffersize: int = 512) -> bytes:
    data = []
    while True:
        try:
            new = os.read(desc, buffersize)
        except OSError as err:
            log.warning('error while reading: %s', err)
            break
        if not new:
            break
        data.append(new)
    return b''.join(data)


def _write(desc: int, data: bytes) -> None:
    i = 0
    while i < len(data):
        i += os.write(desc, data[i:])


class _StreamWriter(threading.Thread):
    """Feed ``data`` to the engine's input pipe and close it."""

    def __init__(self, desc: int, data: bytes) -> None:
        super().__init__(name=f"gpg-mailer-writer-{desc}", daemon=True)
        self.desc = desc
        self.data = data
        self.error: Optional[OSError] = None
        self.start()

    def run(self) -> None:
        try:
            _write(self.desc, self.data)
        except OSError as err:
            self.error = err
            log.warning('error while writing: %s', err)
        finally:
            os.close(self.desc)


class _StreamReader(threading.Thread):
    """Drain the engine's output pipe until it is closed."""

    def __init__(self, desc: int) -> None:
        super().__init__(name=f"gpg-mailer-reader-{desc}", daemon=True)
        self.desc = desc
        self.data = b''
        self.start()

    def run(self) -> None:
        try:
            self.data = _read(self.desc)
        finally:
            os.close(self.desc)


def _debug_assuan() -> None:
    assuan_log = logging.getLogger('assuan')
    assuan_log.setLevel(logging.DEBUG)
    if not any(
        isinstance(handler, logging.StreamHandler)
        for handler in assuan_log.handlers
    ):
        assuan_log.addHandler(logging.StreamHandler())


def _encode(data: Union[str, bytes]) -> bytes:
    if isinstance(data, str):
        return data.encode('utf-8')
    return data


def _decode(data: bytes, encoding: str = 'us-ascii') -> str:
    try:
        return data.decode(encoding)
    except UnicodeDecodeError as err:
        raise EngineError(
            f"engine output is not valid {encoding}", GPG_ERR_GENERAL
        ) from err


def _engine_error(command: str, err: Exception) -> EngineError:
    message = getattr(err, 'message', None) or str(err) or type(err).__name__
    if isinstance(message, bytes):
        message = message.decode('utf-8', 'replace')
    code = getattr(err, 'code', None)
    if not isinstance(code, int):
        code = GPG_ERR_GENERAL
    return EngineError(f"{command} failed: {message}", code)


def _parse(command: str, parser: Callable[[bytes], Any], data: bytes) -> Any:
    try:
        return parser(data)
    except (ElementTree.ParseError, ValueError) as err:
        raise EngineError(
            f"{command} result could not be parsed: {err}", GPG_ERR_BAD_DATA
        ) from err


def _execute(
    client: AssuanClient,
    command: str,
    parameters: str = '',
    passphrase: Optional[str] = None,
) -> Optional[bytes]:
    responses, data = client.make_request(
        Request(command, parameters), expect=['OK', 'INQUIRE']
    )
    while responses and responses[-1].message == 'INQUIRE':
        if passphrase is None:
            log.debug('cancel passphrase inquiry for %s', command)
            try:
                client.make_request(Request('CAN'))
            except AssuanError as err:
                log.debug('%s cancelled: %s', command, err)
            raise EngineError(
                f"{command} needs a passphrase and none was given",
                GPG_ERR_BAD_PASSPHRASE,
            )
        log.debug('answer passphrase inquiry for %s', command)
        responses, data = client.send_data(
            data=passphrase, expect=['OK', 'INQUIRE']
        )
    return data


class Engine:
    """One configured OpenPGP session.

    Building an engine validates ``options``; a rejected configuration raises
    :class:`EngineError` before anything is spawned.  Use it as a context
    manager so selected keys and passphrases are dropped when the session
    ends::

        with Engine({'homedir': '~/.gnupg'}) as gpg:
            gpg.add_encrypt_key(fingerprint)
            armored = gpg.encrypt('Hello')
    """

    def __init__(self, options: Optional[Mapping[str, Any]] = None) -> None:
        self.options = dict(options or {})
        self.always_trust = bool(self.options.get('always_trust', True))
        self._client_params = self._validate(self.options)
        self.encrypt_keys: List[Key] = []
        self.decrypt_keys: List[Tuple[Key, Optional[str]]] = []
        self.sign_keys: List[Tuple[Key, Optional[str]]] = []

    def __enter__(self) -> 'Engine':
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self.encrypt_keys = []
        self.decrypt_keys = []
        self.sign_keys = []

    @staticmethod
    def _validate(options: Mapping[str, Any]) -> Dict[str, Any]:
        params: Dict[str, Any] = {'debug': bool(options.get('debug', False))}

        homedir = options.get('homedir')
        if homedir:
            homedir = os.path.abspath(os.path.expanduser(str(homedir)))
            if not os.path.exists(homedir):
                try:
                    os.makedirs(homedir, mode=0o700)
                except OSError as err:
                    raise EngineError(
                        f'home directory "{homedir}" could not be created: '
                        f"{err.strerror}",
                        GPG_ERR_INV_ENGINE,
                    ) from err
            if not os.path.isdir(homedir):
                raise EngineError(
                    f'home directory "{homedir}" is not a directory',
                    GPG_ERR_INV_ENGINE,
                )
            if not os.access(homedir, os.R_OK | os.W_OK | os.X_OK):
                raise EngineError(
                    f'home directory "{homedir}" is not readable and writable',
                    GPG_ERR_INV_ENGINE,
                )
            params['homedir'] = homedir

        socket_path = options.get('socket_path')
        if socket_path:
            socket_path = os.path.expanduser(str(socket_path))
            if not os.path.exists(socket_path):
                raise EngineError(
                    f'socket "{socket_path}" does not exist',
                    GPG_ERR_INV_ENGINE,
                )
            params['socket_path'] = socket_path
            return params

        binary = str(options.get('binary') or BINARY)
        path = shutil.which(binary)
        if path is None:
            raise EngineError(
                f'engine binary "{binary}" not found', GPG_ERR_INV_ENGINE
            )
        params['binary'] = path

        gpg_binary = options.get('gpg_binary')
        if gpg_binary:
            path = shutil.which(str(gpg_binary))
            if path is None:
                raise EngineError(
                    f'gpg binary "{gpg_binary}" not found', GPG_ERR_INV_ENGINE
                )
            params['gpg_binary'] = path
        return params

    def _attach(self, client: AssuanClient, name: str, desc: int) -> None:
        if self._client_params.get('socket_path'):
            client.send_fds([desc])
            client.make_request(Request(name, 'FD'))
        else:
            client.make_request(Request(name, f"FD={desc}"))

    def _transaction(
        self,
        command: str,
        parameters: str = '',
        data: Optional[bytes] = None,
        output: bool = True,
        result: bool = False,
        signers: Sequence[str] = (),
        recipients: Sequence[str] = (),
        armor: bool = True,
        passphrase: Optional[str] = None,
    ) -> Tuple[bytes, Optional[bytes], Optional[bytes]]:
        """Run ``command`` on a fresh connection.

        Returns what the engine wrote to the output descriptor, the data
        lines of the command's own response and, when ``result`` is set, the
        XML of the following ``RESULT``.
        """
        input_read = input_write = output_read = output_write = -1
        if data is not None:
            input_read, input_write = os.pipe()
        if output:
            output_read, output_write = os.pipe()
        client = process = None
        writer: Optional[_StreamWriter] = None
        reader: Optional[_StreamReader] = None
        plain = b''
        lines = response = None

        try:
            client, process = get_client(
                pass_fds=[d for d in (input_read, output_write) if d >= 0],
                **self._client_params,
            )
            hello(client, armor=armor)
            for signer in signers:
                client.make_request(Request('SIGNER', signer))
            for recipient in recipients:
                client.make_request(Request('RECIPIENT', recipient))

            if input_read >= 0:
                self._attach(client, 'INPUT', input_read)
                os.close(input_read)
                input_read = -1
            if output_write >= 0:
                self._attach(client, 'OUTPUT', output_write)
                os.close(output_write)
                output_write = -1

            # the threads own and close their descriptors from here on
            if input_write >= 0:
                writer = _StreamWriter(input_write, data or b'')
                input_write = -1
            if output_read >= 0:
                reader = _StreamReader(output_read)
                output_read = -1

            log.debug('run %s %s', command, parameters)
            lines = _execute(client, command, parameters, passphrase)
            if reader is not None:
                reader.join()
                plain = reader.data
            if writer is not None:
                writer.join()
                if writer.error is not None:
                    raise EngineError(
                        f"{command} did not take all input: {writer.error}",
                        GPG_ERR_GENERAL,
                    )
            if result:
                _, response = client.make_request(Request('RESULT'))
        except EngineError:
            raise
        except Exception as err:
            raise _engine_error(command, err) from err
        finally:
            if client is not None:
                disconnect(client, process)
            for desc in [input_read, input_write, output_read, output_write]:
                if desc >= 0:
                    os.close(desc)
            for thread in [writer, reader]:
                if thread is not None:
                    thread.join(JOIN_TIMEOUT)
                    if thread.is_alive():
                        log.warning('%s is still running', thread.name)
        return (plain, lines, response)

    def get_keys(self, pattern: str = '', secret: bool = False) -> List[Key]:
        """Lookup keys matching ``pattern``."""
        parameters = []
        if secret:
            parameters.append('--secret-only')
        if pattern:
            parameters.append(pattern)
        _, lines, _ = self._transaction(
            'KEYLIST', ' '.join(parameters), output=False
        )
        return _parse('KEYLIST', parse_keylist, lines)

    def _find_key(self, fingerprint: str, secret: bool = False) -> Key:
        for key in self.get_keys(fingerprint, secret=secret):
            if key.matches(fingerprint):
                return key
        if secret:
            raise EngineError(
                f'no secret key found for "{fingerprint}"', GPG_ERR_NO_SECKEY
            )
        raise EngineError(
            f'no key found for "{fingerprint}"', GPG_ERR_NO_PUBKEY
        )

    def add_encrypt_key(self, fingerprint: str) -> None:
        key = self._find_key(fingerprint)
        if not (key.can_encrypt and key.usable):
            raise EngineError(
                f'key "{fingerprint}" cannot be used for encryption',
                GPG_ERR_UNUSABLE_PUBKEY,
            )
        self.encrypt_keys.append(key)

    def add_decrypt_key(
        self, fingerprint: str, passphrase: Optional[str] = None
    ) -> None:
        key = self._find_key(fingerprint, secret=True)
        self.decrypt_keys.append((key, passphrase))

    def add_sign_key(
        self, fingerprint: str, passphrase: Optional[str] = None
    ) -> None:
        key = self._find_key(fingerprint, secret=True)
        if not (key.can_sign and key.usable):
            raise EngineError(
                f'key "{fingerprint}" cannot be used for signing',
                GPG_ERR_UNUSABLE_SECKEY,
            )
        self.sign_keys.append((key, passphrase))

    @staticmethod
    def _passphrase(
        keys: List[Tuple[Key, Optional[str]]]
    ) -> Optional[str]:
        for _, passphrase in keys:
            if passphrase is not None:
                return passphrase
        return None

    def _trust(self) -> str:
        return '--always-trust' if self.always_trust else ''

    def import_key(self, data: Union[str, bytes]) -> Dict[str, Any]:
        """Import key material and summarise what the engine did."""
        _, _, result = self._transaction(
            'IMPORT', data=_encode(data), output=False, result=True
        )
        summary = _parse('IMPORT', parse_import_result, result)
        if summary['fingerprint'] is None:
            if summary['failed']:
                fingerprint, reason = summary['failed'][0]
                raise EngineError(
                    f"key {fingerprint} was not imported: {reason}",
                    GPG_ERR_GENERAL,
                )
            raise EngineError('no OpenPGP key data found', GPG_ERR_NO_DATA)
        log.info('imported key %s', summary['fingerprint'])
        return summary

    def export_public_key(
        self, fingerprint: str, armor: bool = True
    ) -> Union[str, bytes]:
        self._find_key(fingerprint)
        exported, _, _ = self._transaction('EXPORT', fingerprint, armor=armor)
        if not exported:
            raise EngineError(
                f'no key data exported for "{fingerprint}"', GPG_ERR_NO_DATA
            )
        return _decode(exported) if armor else exported

    def encrypt(
        self, data: Union[str, bytes], armor: bool = True
    ) -> Union[str, bytes]:
        if not self.encrypt_keys:
            raise EngineError('no encryption key given', GPG_ERR_NO_PUBKEY)
        encrypted, _, _ = self._transaction(
            'ENCRYPT',
            self._trust(),
            data=_encode(data),
            recipients=[key.fingerprint for key in self.encrypt_keys],
            armor=armor,
        )
        return _decode(encrypted) if armor else encrypted

    def decrypt(self, data: Union[str, bytes]) -> str:
        decrypted, _, _ = self._transaction(
            'DECRYPT',
            data=_encode(data),
            passphrase=self._passphrase(self.decrypt_keys),
        )
        return _decode(decrypted, 'utf-8')

    def sign(
        self,
        data: Union[str, bytes],
        mode: str = SIGN_MODE_CLEAR,
        armor: bool = True,
    ) -> Union[str, bytes]:
        if mode not in [SIGN_MODE_NORMAL, SIGN_MODE_CLEAR, SIGN_MODE_DETACH]:
            raise ValueError(f"unknown signing mode {mode}")
        if not self.sign_keys:
            raise EngineError('no signing key given', GPG_ERR_NO_SECKEY)
        signed, _, _ = self._transaction(
            'SIGN',
            '' if mode == SIGN_MODE_NORMAL else f"--{mode}",
            data=_encode(data),
            signers=[key.fingerprint for key, _ in self.sign_keys],
            armor=armor,
            passphrase=self._passphrase(self.sign_keys),
        )
        return _decode(signed) if armor else signed

    def encrypt_and_sign(
        self, data: Union[str, bytes], armor: bool = True
    ) -> Union[str, bytes]:
        if not self.encrypt_keys:
            raise EngineError('no encryption key given', GPG_ERR_NO_PUBKEY)
        if not self.sign_keys:
            raise EngineError('no signing key given', GPG_ERR_NO_SECKEY)
        encrypted, _, _ = self._transaction(
            'SIGN_ENCRYPT',
            self._trust(),
            data=_encode(data),
            signers=[key.fingerprint for key, _ in self.sign_keys],
            recipients=[key.fingerprint for key in self.encrypt_keys],
            armor=armor,
            passphrase=self._passphrase(self.sign_keys),
        )
        return _decode(encrypted) if armor else encrypted

    def verify(self, data: Union[str, bytes]) -> List['Signature']:
        """Verify clear-signed or inline-signed ``data``.

        Data without any OpenPGP content has no signatures.
        """
        try:
            _, _, result = self._transaction(
                'VERIFY', data=_encode(data), result=True
            )
        except EngineError as err:
            if err.code & ERROR_CODE_MASK != GPG_ERR_NO_DATA:
                raise
            log.debug('no OpenPGP data to verify')
            return []
        if not result:
            return []
        return _parse(
            'VERIFY', lambda xml: list(verify_result_signatures(xml)), result
        )
