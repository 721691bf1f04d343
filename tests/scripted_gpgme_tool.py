# Copyright (C) 2022 Jesse P. Johnson <jpj6652@gmail.com>
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

"""A scripted ``gpgme-tool --server`` built on :class:`AssuanServer`.

It speaks the same Assuan commands as the real tool but does no
cryptography: "ciphertext" is an armor block whose headers name the keys
used and whose payload is base64.  The keyring holds two fixed keys.

Run as a program it serves stdin/stdout and takes descriptors as ``FD=n``.
:class:`SocketServer` serves a Unix socket from a thread instead and takes
descriptors passed with ``SCM_RIGHTS``.

Behaviour is driven by environment variables so both modes can be steered
the same way:

``SCRIPTED_GPGME_PASSPHRASE``
    inquire for this passphrase before using a secret key
``SCRIPTED_GPGME_FAIL``
    ``COMMAND:code`` makes ``COMMAND`` fail with that gpg-error code
``SCRIPTED_GPGME_LOG``
    append every request to this file
"""

import base64
import logging
import os
import socket
import threading
from typing import Dict, Generator, List, Optional, Tuple
from xml.sax.saxutils import escape

from assuan.common import Request, Response, decode, encode, receive_fds
from assuan.exception import MESSAGE, AssuanError
from assuan.server import AssuanServer

log = logging.getLogger(__name__)

RECIPIENT_FPR = '1B6EFC02852A489B8162033CC7C64BB7CA403A7E'
SERVER_FPR = 'B2EDBE0E771A4B8708DD16A7511AEDA64332B6E3'

KEYS = {
    RECIPIENT_FPR: {'name': 'Jack', 'email': 'jack@example.com', 'secret': False},
    SERVER_FPR: {'name': 'Server', 'email': 'server@example.com', 'secret': True},
}

PASSPHRASE_ENV = 'SCRIPTED_GPGME_PASSPHRASE'
FAIL_ENV = 'SCRIPTED_GPGME_FAIL'
LOG_ENV = 'SCRIPTED_GPGME_LOG'

GPG_ERR_SOURCE_GPGME = 7
DATA_CHUNK = 256

XML_HEADER = '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'


def gpgme_error(code: int) -> AssuanError:
    """Build an error the way gpgme reports it, source bits included."""
    message = MESSAGE.get(code, 'Unknown error code')
    return AssuanError(
        code=(GPG_ERR_SOURCE_GPGME << 24) | code, message=f"{message} <GPGME>"
    )


def armor(kind: str, headers: List[Tuple[str, str]], payload: bytes) -> bytes:
    lines = [f"-----BEGIN PGP {kind}-----"]
    lines.extend(f"{name}: {value}" for name, value in headers)
    lines.append('')
    lines.append(base64.encodebytes(payload).decode('ascii').rstrip('\n'))
    lines.append(f"-----END PGP {kind}-----")
    return ('\n'.join(lines) + '\n').encode('ascii')


def dearmor(data: bytes) -> Optional[Tuple[str, Dict[str, str], bytes]]:
    """Split an armor block into its kind, headers and decoded payload.

    >>> dearmor(armor('MESSAGE', [('Signer', 'ABCD')], b'Hello'))
    ('MESSAGE', {'Signer': 'ABCD'}, b'Hello')
    >>> print(dearmor(b'Hello'))
    None
    """
    lines = data.decode('ascii', 'replace').strip().splitlines()
    if not lines or not lines[0].startswith('-----BEGIN PGP '):
        return None
    kind = lines[0][len('-----BEGIN PGP ') : -len('-----')]
    headers = {}
    body = []
    in_headers = True
    for line in lines[1:]:
        if line.startswith('-----END PGP '):
            break
        if in_headers:
            if not line:
                in_headers = False
            elif ': ' in line:
                name, value = line.split(': ', 1)
                headers[name] = value
            continue
        body.append(line)
    try:
        payload = base64.b64decode(''.join(body), validate=True)
    except ValueError:
        payload = '\n'.join(body).encode('ascii')
    return (kind, headers, payload)


def keylist_xml(fingerprints: List[str], secret: bool) -> bytes:
    keys = []
    for fingerprint in fingerprints:
        key = KEYS[fingerprint]
        keys.append(
            '<key>'
            '<revoked value="0x0"/><expired value="0x0"/>'
            '<disabled value="0x0"/><invalid value="0x0"/>'
            '<can-encrypt value="0x1"/><can-sign value="0x1"/>'
            f'<secret value="0x{int(secret)}"/>'
            '<protocol>OpenPGP</protocol>'
            f'<subkeys><subkey><fpr>{fingerprint}</fpr></subkey></subkeys>'
            '<uids><uid>'
            f"<uid>{escape(key['name'])} &lt;{escape(key['email'])}&gt;</uid>"
            f"<name>{escape(key['name'])}</name>"
            f"<email>{escape(key['email'])}</email>"
            '</uid></uids>'
            '</key>'
        )
    return (
        XML_HEADER
        + '<gpgme><keylist-result>'
        + ''.join(keys)
        + '</keylist-result></gpgme>\n'
    ).encode('utf-8')


def import_xml(fingerprint: Optional[str], secret: bool) -> bytes:
    imported = 1 if fingerprint else 0
    status = ''
    if fingerprint:
        status = (
            '<imports><import-status>'
            f'<fpr>{fingerprint}</fpr>'
            '<result value="0x0">Success &lt;Unspecified source&gt;</result>'
            f'<status value="0x{0x11 if secret else 0x1:x}"/>'
            '</import-status></imports>'
        )
    return (
        XML_HEADER
        + '<gpgme><import-result>'
        + f'<considered value="0x{imported:x}"/>'
        + f'<imported value="0x{imported:x}"/>'
        + '<unchanged value="0x0"/>'
        + f'<secret-imported value="0x{int(secret and imported):x}"/>'
        + '<secret-unchanged value="0x0"/>'
        + status
        + '</import-result></gpgme>\n'
    ).encode('utf-8')


def verify_xml(fingerprint: str) -> bytes:
    status = 0 if fingerprint in KEYS else 9
    summary = 0x3 if status == 0 else 0x80
    return (
        XML_HEADER
        + '<gpgme><verify-result><signatures><signature>'
        + f'<summary value="0x{summary:x}"/>'
        + f'<fpr>{fingerprint}</fpr>'
        + f'<status value="0x{status:x}">Success &lt;Unspecified source&gt;'
        + '</status>'
        + '<timestamp unix="1332358207i"/>'
        + '<exp-timestamp unix="0i"/>'
        + '<validity value="0x4"/>'
        + '<pubkey-algo value="0x1">RSA</pubkey-algo>'
        + '<hash-algo value="0x8">SHA256</hash-algo>'
        + '</signature></signatures></verify-result></gpgme>\n'
    ).encode('utf-8')


def data_responses(data: bytes) -> Generator[Response, None, None]:
    for start in range(0, len(data), DATA_CHUNK):
        yield Response('D', encode(data[start : start + DATA_CHUNK]))


class ScriptedServer(AssuanServer):
    """Answer ``gpgme-tool`` commands for one client connection."""

    def __init__(self, received_fds: Optional[List[int]] = None) -> None:
        self.received_fds = received_fds
        self.input_fd: Optional[int] = None
        self.output_fd: Optional[int] = None
        self.signers: List[str] = []
        self.recipients: List[str] = []
        self.result = b''
        super().__init__(name='gpgme-tool')

    def _handle_request(self, request: Request) -> None:
        path = os.environ.get(LOG_ENV)
        if path:
            with open(path, 'a', encoding='utf-8') as f:
                f.write(f"{request.command} {request.parameters or ''}".rstrip())
                f.write('\n')
        super()._handle_request(request)

    def _descriptor(self, arg: Optional[str]) -> int:
        if arg == 'FD':
            if not self.received_fds:
                raise AssuanError(message='No input source for IPC')
            return self.received_fds.pop(0)
        if arg and arg.startswith('FD='):
            return int(arg[len('FD=') :])
        raise AssuanError(message='Invalid value')

    def _reset_fds(self) -> None:
        for name in ['input_fd', 'output_fd']:
            desc = getattr(self, name)
            if desc is not None:
                os.close(desc)
                setattr(self, name, None)

    def _take_input(self) -> bytes:
        if self.input_fd is None:
            raise gpgme_error(58)
        chunks = []
        while True:
            chunk = os.read(self.input_fd, 4096)
            if not chunk:
                break
            chunks.append(chunk)
        return b''.join(chunks)

    def _give_output(self, data: bytes) -> None:
        if self.output_fd is None:
            return
        view = memoryview(data)
        while view:
            view = view[os.write(self.output_fd, view) :]

    def _inquire_passphrase(self) -> Generator[Response, None, None]:
        expected = os.environ.get(PASSPHRASE_ENV)
        if not expected:
            return
        yield Response('INQUIRE', 'PASSPHRASE')
        chunks = []
        while True:
            line = self.intake.readline().rstrip(b'\r\n')
            if line == b'END':
                break
            if not line.startswith(b'D '):
                raise gpgme_error(99)
            chunks.append(decode(line[2:]))
        if b''.join(chunks).decode('utf-8') != expected:
            raise gpgme_error(11)

    def _run(self, command: str, operation) -> Generator[Response, None, None]:
        try:
            failure = os.environ.get(FAIL_ENV, '')
            if failure.startswith(f"{command}:"):
                raise gpgme_error(int(failure.split(':', 1)[1]))
            yield from operation()
        finally:
            self._reset_fds()
        yield Response('OK')

    def _handle_armor(self, arg: str) -> Generator[Response, None, None]:
        yield Response('OK')

    def _handle_signer(self, arg: str) -> Generator[Response, None, None]:
        if not KEYS.get(arg, {}).get('secret'):
            raise gpgme_error(17)
        self.signers.append(arg)
        yield Response('OK')

    def _handle_recipient(self, arg: str) -> Generator[Response, None, None]:
        if arg not in KEYS:
            raise gpgme_error(9)
        self.recipients.append(arg)
        yield Response('OK')

    def _handle_input(self, arg: str) -> Generator[Response, None, None]:
        self.input_fd = self._descriptor(arg)
        yield Response('OK')

    def _handle_output(self, arg: str) -> Generator[Response, None, None]:
        self.output_fd = self._descriptor(arg)
        yield Response('OK')

    def _handle_result(self, arg: str) -> Generator[Response, None, None]:
        yield from data_responses(self.result)
        yield Response('OK')

    def _handle_keylist(self, arg: str) -> Generator[Response, None, None]:
        parameters = (arg or '').split()
        secret = '--secret-only' in parameters
        patterns = [p.upper() for p in parameters if not p.startswith('--')]
        fingerprints = [
            fingerprint
            for fingerprint, key in KEYS.items()
            if (key['secret'] or not secret)
            and (not patterns or any(fingerprint.endswith(p) for p in patterns))
        ]
        return self._run(
            'KEYLIST',
            lambda: data_responses(keylist_xml(fingerprints, secret)),
        )

    def _handle_import(self, arg: str) -> Generator[Response, None, None]:
        def run():
            block = dearmor(self._take_input())
            fingerprint = None
            secret = False
            if block is not None and block[0] == 'PRIVATE KEY BLOCK':
                fingerprint, secret = SERVER_FPR, True
            elif block is not None and block[0] == 'PUBLIC KEY BLOCK':
                fingerprint = block[1].get('Fingerprint', RECIPIENT_FPR)
            self.result = import_xml(fingerprint, secret)
            return iter(())

        return self._run('IMPORT', run)

    def _handle_export(self, arg: str) -> Generator[Response, None, None]:
        def run():
            if arg in KEYS:
                self._give_output(
                    armor('PUBLIC KEY BLOCK', [('Fingerprint', arg)], b'key')
                )
            return iter(())

        return self._run('EXPORT', run)

    def _handle_encrypt(self, arg: str) -> Generator[Response, None, None]:
        def run():
            if not self.recipients:
                raise gpgme_error(9)
            headers = [('Recipients', ','.join(self.recipients))]
            headers.append(('Trust', _trust(arg)))
            self._give_output(armor('MESSAGE', headers, self._take_input()))
            return iter(())

        return self._run('ENCRYPT', run)

    def _handle_sign(self, arg: str) -> Generator[Response, None, None]:
        mode = {'--clear': 'clear', '--detach': 'detach'}.get(arg, 'normal')
        kind = {'clear': 'SIGNED MESSAGE', 'detach': 'SIGNATURE'}.get(
            mode, 'MESSAGE'
        )

        def run():
            if not self.signers:
                raise gpgme_error(17)
            yield from self._inquire_passphrase()
            headers = [('Signer', ','.join(self.signers)), ('Mode', mode)]
            self._give_output(armor(kind, headers, self._take_input()))

        return self._run('SIGN', run)

    def _handle_sign_encrypt(
        self, arg: str
    ) -> Generator[Response, None, None]:
        def run():
            if not self.recipients:
                raise gpgme_error(9)
            if not self.signers:
                raise gpgme_error(17)
            yield from self._inquire_passphrase()
            headers = [
                ('Recipients', ','.join(self.recipients)),
                ('Signer', ','.join(self.signers)),
                ('Trust', _trust(arg)),
            ]
            self._give_output(armor('MESSAGE', headers, self._take_input()))

        return self._run('SIGN_ENCRYPT', run)

    def _handle_decrypt(self, arg: str) -> Generator[Response, None, None]:
        def run():
            block = dearmor(self._take_input())
            if block is None or 'Recipients' not in block[1]:
                raise gpgme_error(58)
            recipients = block[1]['Recipients'].split(',')
            if not any(KEYS.get(r, {}).get('secret') for r in recipients):
                raise gpgme_error(17)
            yield from self._inquire_passphrase()
            self._give_output(block[2])

        return self._run('DECRYPT', run)

    def _handle_verify(self, arg: str) -> Generator[Response, None, None]:
        def run():
            block = dearmor(self._take_input())
            if block is None or 'Signer' not in block[1]:
                raise gpgme_error(58)
            self.result = verify_xml(block[1]['Signer'])
            self._give_output(block[2])
            return iter(())

        return self._run('VERIFY', run)


def _trust(arg: Optional[str]) -> str:
    return 'always' if arg == '--always-trust' else 'normal'


class _DescriptorReader:
    """Line reader for a Unix socket that keeps any descriptors it receives.

    Comment lines are dropped, which hides the note the client sends along
    with its descriptors.
    """

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self.buffer = b''
        self.fds: List[int] = []

    def readline(self) -> bytes:
        while True:
            while b'\n' not in self.buffer:
                try:
                    data, fds = receive_fds(self.sock, msglen=4096)
                except OSError:
                    data, fds = b'', []
                self.fds.extend(fds)
                if not data:
                    line, self.buffer = self.buffer, b''
                    return line
                self.buffer += data
            line, _, self.buffer = self.buffer.partition(b'\n')
            if not line.startswith(b'#'):
                return line + b'\n'


class SocketServer:
    """Serve :class:`ScriptedServer` on a Unix socket, one client at a time."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.listener.bind(path)
        self.listener.listen(1)
        self.thread = threading.Thread(target=self.run, daemon=True)
        self.thread.start()

    def run(self) -> None:
        while True:
            try:
                conn, _ = self.listener.accept()
            except OSError:
                return
            with conn:
                self.serve(conn)

    def serve(self, conn: socket.socket) -> None:
        reader = _DescriptorReader(conn)
        server = ScriptedServer(received_fds=reader.fds)
        server.intake = reader
        server.outtake = conn.makefile('wb')
        try:
            server.run()
        except OSError as err:
            log.warning('client went away: %s', err)
        finally:
            server.outtake.close()
            for desc in reader.fds:
                os.close(desc)

    def close(self) -> None:
        try:
            self.listener.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.listener.close()
        self.thread.join(5)


def main() -> None:
    ScriptedServer().run()


if __name__ == '__main__':
    main()
