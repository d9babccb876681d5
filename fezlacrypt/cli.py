"""
cli.py

Command line front end.

Usage examples:
  Encrypt files (binary envelopes, one process per file):
    fezlacrypt encrypt -I a.png b.jpg --file-workers 2

  Encrypt a whole directory (recursively):
    fezlacrypt encrypt -D ./photos --recursive

  Decrypt:
    fezlacrypt decrypt -I a.png.fzc

  Image <-> shareable .txt envelope:
    fezlacrypt encrypt-image photo.jpg -o ./out
    fezlacrypt decrypt-image ./out/data_1700000000000.txt -o ./out

  Text messages:
    fezlacrypt encrypt-text "meet at noon"
    fezlacrypt decrypt-text 'FZC1$pbkdf2$...'
"""

import argparse
import logging
import os
import sys

from .config import DEFAULT_CHUNK_SIZE, DEFAULT_CONCURRENCY, DEFAULT_SCHEME, CrypterConfig
from .crypter import CrypterSession, save_image
from .errors import CrypterError, describe
from .files import collect_input_files, decrypt_file, decrypted_name, encrypt_file, encrypted_name, run_files
from .kdf import SCHEMES
from .sources import MediaItem, export_envelope, import_envelope

logger = logging.getLogger(__name__)


def get_password(prompt: str) -> str:
    try:
        import getpass
        return getpass.getpass(prompt)
    except Exception:  # noqa: BLE001 - no tty
        return input(prompt)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='fezlacrypt', description='Password-based image and text encryption')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    sub = parser.add_subparsers(dest='cmd')

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--scheme', choices=sorted(SCHEMES), default=None,
                        help='Key derivation scheme (default: pbkdf2)')
    common.add_argument('--chunk-size', type=int, default=DEFAULT_CHUNK_SIZE)

    for name in ('encrypt', 'decrypt'):
        p = sub.add_parser(name, parents=[common], help=f'{name.capitalize()} files (binary envelopes)')
        p.add_argument('-I', '--inputs', nargs='*', help='Input files or directories', default=[])
        p.add_argument('-D', '--input-dir', help='Input directory to scan', default=None)
        p.add_argument('-o', '--output-dir', help='Output directory (defaults to same dir as input)', default=None)
        p.add_argument('--recursive', action='store_true', help='Scan directories recursively')
        p.add_argument('--file-workers', type=int, default=2, help='Number of files to process in parallel')
        p.add_argument('--chunk-workers', type=int, default=None,
                       help='Chunk-level workers per file (use 1 when doing file-level parallelism)')
        p.add_argument('--processes', action='store_true', help='Run chunk workers in processes')

    p = sub.add_parser('encrypt-image', parents=[common], help='Encrypt an image to a .txt envelope')
    p.add_argument('image')
    p.add_argument('-o', '--output-dir', default='.')
    p.add_argument('--stdout', action='store_true', help='Print the envelope instead of writing a file')

    p = sub.add_parser('decrypt-image', parents=[common], help='Decrypt a .txt envelope to an image')
    p.add_argument('envelope', help='Path to the .txt envelope')
    p.add_argument('-o', '--output-dir', default='.')

    p = sub.add_parser('encrypt-text', parents=[common], help='Encrypt a text message')
    p.add_argument('message', nargs='?', help='Message (read from stdin if omitted)')
    p.add_argument('--compact', action='store_true', help='Single base64 blob (pbkdf2 only)')

    p = sub.add_parser('decrypt-text', parents=[common], help='Decrypt a text message')
    p.add_argument('message', nargs='?', help='Envelope text (read from stdin if omitted)')
    return parser


def _run_files(args, password) -> int:
    files = collect_input_files(args.inputs, args.input_dir, args.recursive)
    if not files:
        print('No input files found.')
        return 1

    if len(files) == 1:
        infile = files[0]
        outdir = args.output_dir or os.path.dirname(infile)
        if args.cmd == 'encrypt':
            outfile = os.path.join(outdir, encrypted_name(infile))
            encrypt_file(infile, outfile, password, chunk_size=args.chunk_size, workers=args.chunk_workers,
                         scheme=args.scheme or DEFAULT_SCHEME, use_processes=args.processes, show_progress=True)
            print(f'Encrypted: {infile} -> {outfile}')
        else:
            outfile = os.path.join(outdir, decrypted_name(infile))
            decrypt_file(infile, outfile, password, workers=args.chunk_workers, scheme=args.scheme,
                         use_processes=args.processes, show_progress=True)
            print(f'Decrypted: {infile} -> {outfile}')
        return 0

    succeeded, failed = run_files(args.cmd, files, password, args.output_dir,
                                  chunk_size=args.chunk_size, file_workers=args.file_workers,
                                  chunk_workers=args.chunk_workers or 1, scheme=args.scheme)
    verb = 'Encrypted' if args.cmd == 'encrypt' else 'Decrypted'
    for infile, outfile in succeeded:
        print(f'{verb}: {infile} -> {outfile}')
    for infile, e in failed:
        print(f'Failed to {args.cmd} {infile}: {describe(e)}')
    return 1 if failed else 0


def _read_message(args) -> str:
    return args.message if args.message is not None else sys.stdin.read().strip()


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.cmd is None:
        parser.print_help()
        return 1

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')

    password = get_password('Password: ')
    try:
        if args.cmd in ('encrypt', 'decrypt'):
            return _run_files(args, password)

        config = CrypterConfig(chunk_size=args.chunk_size, concurrency=DEFAULT_CONCURRENCY)
        config = config.with_overrides(scheme=args.scheme)
        with CrypterSession(config) as session:
            if args.cmd == 'encrypt-image':
                text = session.encrypt_image(MediaItem(args.image), password)
                if args.stdout:
                    print(text)
                else:
                    print(f'Encrypted: {args.image} -> {export_envelope(text, args.output_dir)}')
            elif args.cmd == 'decrypt-image':
                image = session.decrypt_image(import_envelope(args.envelope), password, scheme=args.scheme)
                print(f'Decrypted {image.mime}: {save_image(image, args.output_dir)}')
            elif args.cmd == 'encrypt-text':
                print(session.encrypt_text(_read_message(args), password, compact=args.compact))
            elif args.cmd == 'decrypt-text':
                print(session.decrypt_text(_read_message(args), password, scheme=args.scheme))
    except CrypterError as e:
        logger.debug('%s failed', args.cmd, exc_info=True)
        print(f'Error: {describe(e)} ({e})', file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
