"""
Face-bound wallet identity - command line front end
===================================================
Uses:
  - face_recognition (Python/dlib) for landmarks and 128-dim encodings
  - MTCNN (facenet-pytorch, optional) for face detection
  - OpenCV for camera capture
  - eth_account / web3 for the wallet signature and the identity contract
  - IPFS for the encrypted enrollment payload

Usage:
  python identity_app.py enroll --name NAME --email EMAIL [--challenge BLINK]
  python identity_app.py verify [--challenge SMILE]
  python identity_app.py check
"""

import argparse
import logging
import sys

import requests
from web3 import Web3

from blob_store import IpfsBlobStore
from capture import Camera, Capabilities
from config import configure_logging, get_settings
from errors import CapabilityUnavailable, IdentityError
from identity_registry import ContractIdentityRegistry
from key_derivation import LocalWalletSigner, RpcWalletSigner
from landmarks import FaceRecognitionProvider
from liveness import Challenge
from sessions import EnrollmentSession, VerificationSession

logger = logging.getLogger(__name__)


def initialize_capabilities(settings):
    """Open nothing yet; load the face model and describe the camera."""
    camera = Camera(index=settings.camera_index)
    provider = FaceRecognitionProvider(detector=settings.face_detector)
    print(f"[OK] Face model initialized ({settings.face_detector} detector)")
    return Capabilities(camera=camera, provider=provider, ready=True)


def _confirm_signature(message):
    answer = input(f'Sign "{message}" to unlock your face data? [y/N] ')
    return answer.strip().lower() in ("y", "yes")


def build_signer(settings, web3):
    if settings.wallet_private_key:
        return LocalWalletSigner(settings.wallet_private_key, confirm=_confirm_signature)
    return RpcWalletSigner(web3)


def build_services(settings):
    """Signer, blob store and registry for one CLI run."""
    web3 = Web3(Web3.HTTPProvider(settings.rpc_url))
    signer = build_signer(settings, web3)
    account = signer.account if isinstance(signer, LocalWalletSigner) else None
    registry = ContractIdentityRegistry(
        web3, settings.contract_address, account=account,
        sender=None if account else signer.get_address(),
    )
    blob_store = IpfsBlobStore(settings.ipfs_api_url, settings.ipfs_gateways, settings.ipfs_timeout)
    return signer, blob_store, registry


def run_checks(settings):
    """Connectivity checks for the camera, IPFS and the chain."""
    results = []

    camera = Camera(index=settings.camera_index)
    try:
        with camera.session():
            ok = camera.read() is not None
        results.append(("Camera", ok, "frame captured" if ok else "no frame"))
    except CapabilityUnavailable as exc:
        results.append(("Camera", False, str(exc)))

    try:
        response = requests.post(f"{settings.ipfs_api_url}/api/v0/version", timeout=settings.ipfs_timeout)
        response.raise_for_status()
        results.append(("IPFS", True, f"version {response.json().get('Version', '?')}"))
    except (requests.exceptions.RequestException, ValueError) as exc:
        results.append(("IPFS", False, str(exc)))

    web3 = Web3(Web3.HTTPProvider(settings.rpc_url))
    connected = web3.is_connected()
    results.append(("Blockchain", connected, settings.rpc_url))
    return results


def _print_outcome(outcome):
    if outcome.succeeded:
        if outcome.match is not None:
            print(f"[OK] Face matched ({outcome.match.confidence:.2f}%)")
        else:
            print(f"[OK] Enrolled, encrypted face data at {outcome.reference}")
        return 0

    print(f"[ERROR] {outcome.reason.value}: {outcome.error}")
    if outcome.match is not None:
        print(f"        confidence {outcome.match.confidence:.2f}%")
    return 1


def main(argv=None):
    parser = argparse.ArgumentParser(description="Face-bound wallet identity")
    sub = parser.add_subparsers(dest="command", required=True)

    enroll = sub.add_parser("enroll", help="Enroll your face under your wallet")
    enroll.add_argument("--name", required=True)
    enroll.add_argument("--email", required=True)
    enroll.add_argument("--challenge", choices=[c.value for c in Challenge])

    verify = sub.add_parser("verify", help="Log in with your face")
    verify.add_argument("--challenge", choices=[c.value for c in Challenge])

    sub.add_parser("check", help="Check camera, IPFS and blockchain connectivity")

    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)

    if args.command == "check":
        results = run_checks(settings)
        for name, ok, message in results:
            print(f"  [{'PASS' if ok else 'FAIL'}] {name:12s} -> {message}")
        return 0 if all(ok for _, ok, _ in results) else 1

    try:
        capabilities = initialize_capabilities(settings)
        signer, blob_store, registry = build_services(settings)
    except IdentityError as exc:
        print(f"[ERROR] {exc}")
        return 1

    if args.command == "enroll":
        session = EnrollmentSession(capabilities, signer, blob_store, registry,
                                    settings=settings, challenge=args.challenge)
        print("[INFO] Look at the camera...")
        return _print_outcome(session.run(args.name, args.email))

    session = VerificationSession(capabilities, signer, blob_store, registry,
                                  settings=settings, challenge=args.challenge)
    print("[INFO] Look at the camera...")
    while True:
        code = _print_outcome(session.run())
        if code == 0:
            return 0
        if session.fallback_required:
            print("[INFO] Too many failed attempts. Use e-mail login instead.")
            return 1
        if input("Try again? [y/N] ").strip().lower() not in ("y", "yes"):
            return 1
        session.reset()


if __name__ == "__main__":
    sys.exit(main())
