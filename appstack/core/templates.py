# AppStack - Application Config Templates

from appstack.core.models import ApplicationRecord


def render_env_file(record: ApplicationRecord) -> str:
    """Laravel ``.env`` for an installed application."""
    db = record.database
    if db is not None:
        db_block = f"""DB_CONNECTION=pgsql
DB_HOST={db.host}
DB_PORT={db.port}
DB_DATABASE={db.name}
DB_USERNAME={db.user}
DB_PASSWORD="{db.password}\""""
    else:
        db_block = "DB_CONNECTION=sqlite"

    return f"""APP_NAME="{record.display_name}"
APP_ENV=production
APP_KEY=
APP_DEBUG=false
APP_URL={record.url}

LOG_CHANNEL=stack
LOG_DEPRECATIONS_CHANNEL=null
LOG_LEVEL=debug

{db_block}

BROADCAST_DRIVER=log
CACHE_DRIVER=file
FILESYSTEM_DISK=local
QUEUE_CONNECTION=sync
SESSION_DRIVER=file
SESSION_LIFETIME=120
"""


def render_nginx_vhost(record: ApplicationRecord, php_port: int = 9000) -> str:
    """nginx server block serving the app's ``public`` dir on its own port."""
    root = (record.paths.app / "public").as_posix()
    return f"""server {{
    listen {record.port};
    server_name localhost;
    root {root};
    index index.php index.html;

    location / {{
        try_files $uri $uri/ /index.php?$query_string;
    }}

    location ~ \\.php$ {{
        fastcgi_pass 127.0.0.1:{php_port};
        fastcgi_index index.php;
        fastcgi_param SCRIPT_FILENAME $realpath_root$fastcgi_script_name;
        include fastcgi_params;
    }}

    location ~ /\\.ht {{
        deny all;
    }}
}}
"""
