"""Command line interface for testing configuration loading"""
from . import settings_conf
from pathlib import Path


def main():
    """Display loaded configuration"""
    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in settings_conf.items():
        print(f"{key}: {value}")

    # Save example configuration file
    example = Path("settings.conf.example")
    if not example.exists():
        with open(example, "w") as f:
            f.write("""[DEFAULT]
# Storage backend: postgres or memory
store_backend = postgres
db_url = postgresql://root@localhost:26257/settlement?sslmode=disable
# Seconds to wait for a row lock before reporting a conflict
lock_timeout = 5
api_host = 0.0.0.0
api_port = 8000
log_level = INFO
history_page_size = 20
""")
        print(f"\nWrote {example}")


if __name__ == "__main__":
    main()
