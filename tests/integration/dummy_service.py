import os
import sys
import time


def main():
    print("Dummy service starting...")
    print(f"SERVICE: {os.environ.get('STACKORCH_SERVICE')}")
    print(f"APP_ENV: {os.environ.get('APP_ENV')}")
    for key in sorted(os.environ):
        if key.endswith('_HOST') or key.startswith('STACKORCH_VOLUME_'):
            print(f"{key}={os.environ[key]}")

    # Signal readiness through a file after an optional delay
    ready_file = os.environ.get('READY_FILE')
    if ready_file:
        time.sleep(float(os.environ.get('READY_DELAY', '0')))
        with open(ready_file, 'w') as f:
            f.write('ready')

    lifetime = float(os.environ.get('LIFETIME', '60'))
    deadline = time.time() + lifetime
    while time.time() < deadline:
        time.sleep(0.1)

    print("Dummy service finishing.")
    sys.exit(int(os.environ.get('EXIT_CODE', '0')))


if __name__ == "__main__":
    main()
