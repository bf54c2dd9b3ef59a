#!/usr/bin/env python3
"""
Simple ONNX Runtime verification script for devices and containers.

Usage:
  python -m utils.verify_runtime [--config restoration.yaml] [--strict]

--strict fails when a configured accelerator provider is unavailable
(by default the CPU fallback counts as a pass).
"""

import argparse
import os
import sys


def verify_runtime(config_path=None, strict=False):
    """Verify onnxruntime is importable and report which providers would be used."""
    print("=" * 60)
    print("ONNX Runtime Verification")
    print("=" * 60)
    print()

    try:
        import onnxruntime as ort
        print(f"✓ onnxruntime installed: {ort.__version__}")
    except ImportError as e:
        print(f"✗ onnxruntime not installed: {e}")
        return False

    from backends.errors import ConfigurationError
    from backends.runtime import CPU_PROVIDER, InferenceRuntime, RuntimeConfig

    available = list(ort.get_available_providers())
    print(f"✓ Available providers: {', '.join(available) or '(none)'}")

    runtime_cfg = RuntimeConfig()
    config_path = config_path or os.environ.get("RESTORE_CONFIG", "restoration.yaml")
    if os.path.isfile(config_path):
        from server.restore_config import RestoreConfigManager
        try:
            runtime_cfg = RestoreConfigManager(config_path).runtime_config()
            print(f"✓ Loaded runtime section from {config_path}")
        except (ValueError, ConfigurationError) as e:
            print(f"✗ Invalid configuration {config_path}: {e}")
            return False
    else:
        print(f"  No config at {config_path}; using defaults")

    print()
    print("Provider Resolution:")
    print("-" * 60)
    try:
        runtime = InferenceRuntime(runtime_cfg)
        resolved = runtime.resolve_providers()
    except ConfigurationError as e:
        print(f"✗ {e}")
        return False

    info = runtime.describe()
    print(f"  Requested: {', '.join(info['requested'])}")
    print(f"  Resolved:  {', '.join(info['providers'])}")

    missing = [
        p for p in info["requested"]
        if p not in info["providers"] and p != CPU_PROVIDER
    ]
    if runtime.accelerated:
        print("✓ Hardware acceleration available")
    else:
        print("✗ No accelerator available; inference will run on CPU")
    for name in missing:
        print(f"  - {name} unavailable")

    mem = runtime.available_memory_bytes()
    print()
    if mem is None:
        print("✗ Available memory: unknown")
    else:
        print(f"✓ Available memory: {mem / 1024**2:.0f} MB")

    if not resolved:
        print("✗ No usable execution provider")
        return False
    if strict and missing:
        print()
        print("✗ Strict mode: configured accelerator(s) missing")
        return False

    print()
    print("=" * 60)
    print("✓ Runtime checks passed!")
    print("=" * 60)

    return True


def main(argv=None):
    parser = argparse.ArgumentParser(description="Verify the ONNX Runtime setup")
    parser.add_argument("--config", default=None, help="Path to restoration.yaml")
    parser.add_argument("--strict", action="store_true", help="Fail when a configured accelerator is missing")
    args = parser.parse_args(argv)
    return 0 if verify_runtime(args.config, args.strict) else 1


if __name__ == "__main__":
    sys.exit(main())
