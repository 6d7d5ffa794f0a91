import os


def get_data_dir():
    # IDEAVAULT_DATA_DIR wins so tests and portable installs can relocate the vault.
    base = os.environ.get("IDEAVAULT_DATA_DIR", "").strip()
    if not base:
        base = os.path.join(os.path.expanduser("~"), ".ideavault")

    os.makedirs(base, exist_ok=True)
    return base


def get_db_path():
    return os.path.join(get_data_dir(), "ideavault.db")
