from jinja2 import Template

ROUTER_PHP = Template(
    """<?php
// Router for OpenEMR with PHP's built-in web server
$webRoot = getenv('OPENEMR_WEB_ROOT') ?: '{{ web_root }}';
$uri = parse_url($_SERVER['REQUEST_URI'], PHP_URL_PATH);
$requestFile = $webRoot . $uri;

// Serve existing files directly (CSS, JS, images, etc.)
if ($uri !== '/' && file_exists($requestFile) && !is_dir($requestFile)) {
    return false;
}

$openemrEntryPoints = [
    $webRoot . '/interface/main/main.php',
    $webRoot . '/interface/main.php',
    $webRoot . '/main.php',
    $webRoot . '/index.php',
];

if (is_dir($webRoot . '/interface')) {
    $interfaceDir = $webRoot . '/interface';
    if (is_dir($interfaceDir . '/main')) {
        $openemrEntryPoints[] = $interfaceDir . '/main/index.php';
    }
    $openemrEntryPoints[] = $interfaceDir . '/index.php';
}

foreach ($openemrEntryPoints as $entryPoint) {
    if (file_exists($entryPoint)) {
        $_SERVER['SCRIPT_NAME'] = $entryPoint;
        $_SERVER['PHP_SELF'] = $entryPoint;
        $_SERVER['DOCUMENT_ROOT'] = $webRoot;
        require $entryPoint;
        return;
    }
}

http_response_code(404);
echo "OpenEMR entry point not found. Expected: interface/main/main.php\\n";
echo "Web root: " . $webRoot . "\\n";
"""
)


CREATE_PHAR_PHP = Template(
    """<?php
ini_set('phar.readonly', '0');
$pharFile = $argv[1];
$sourceDir = $argv[2];
if (file_exists($pharFile)) {
    unlink($pharFile);
}
$phar = new Phar($pharFile);
$phar->buildFromDirectory($sourceDir);
$phar->setStub($phar->createDefaultStub('{{ stub }}'));
$phar->compressFiles(Phar::GZ);
echo "PHAR created: $pharFile\\n";
"""
)


EXTRACT_PHAR_PHP = Template(
    """<?php
ini_set('memory_limit', '{{ memory_limit }}');
ini_set('max_execution_time', '0');
$pharFile = $argv[1];
$extractDir = $argv[2];
try {
    $phar = new Phar($pharFile);
    $phar->extractTo($extractDir, null, true);
    echo "{{ marker }}\\n";
} catch (Exception $e) {
    echo "ERROR: " . $e->getMessage() . "\\n";
    exit(1);
}
"""
)


#: Apache virtual host for OpenEMR, either executing PHP through the CGI
#: wrapper (``variant == 'cgi'``) or by proxying to php-fpm (``'fpm'``)
APACHE_VHOST = Template(
    """# Apache Virtual Host Configuration for OpenEMR
#
{%- if variant == 'cgi' %}
# PHP files are executed by the static php-cgi binary via a wrapper script.
{%- else %}
# PHP files are handed to the static php-fpm binary listening on {{ fcgi_address }}.
{%- endif %}

Define OPENEMR_PATH {{ openemr_path }}

<VirtualHost *:{{ port }}>
    ServerName localhost
    DocumentRoot "${OPENEMR_PATH}"
{%- if variant == 'cgi' %}

    # Optional: Enable debug mode for the PHP wrapper script (1 to enable)
    # SetEnv DEBUG_PHP_WRAPPER 1
{%- endif %}

    RewriteEngine On
    RewriteRule ^$ /index.php [L]
{%- if variant == 'cgi' %}

    ScriptAlias /cgi-bin/ "${OPENEMR_PATH}/cgi-bin/"

    <Directory "${OPENEMR_PATH}/cgi-bin">
        Options +ExecCGI
        Require all granted
    </Directory>

    Action application/x-httpd-php /cgi-bin/php-wrapper.cgi
    AddHandler application/x-httpd-php .php
{%- else %}

    <FilesMatch \\.php$>
        SetHandler "proxy:fcgi://{{ fcgi_address }}"
    </FilesMatch>
{%- endif %}

    <IfModule mod_deflate.c>
        AddOutputFilterByType DEFLATE text/html text/plain text/xml text/css text/javascript application/javascript application/json
    </IfModule>

    KeepAlive On
    MaxKeepAliveRequests 100
    KeepAliveTimeout 5

    <Directory "${OPENEMR_PATH}">
        Options -Indexes +FollowSymLinks
        AllowOverride All
        Require all granted
        DirectoryIndex index.php index.html

        <FilesMatch "\\.(git|sql|ini|log|json|lock|md)$">
            Require all denied
        </FilesMatch>

        <FilesMatch "^\\.">
            Require all denied
        </FilesMatch>
    </Directory>
{%- if variant == 'cgi' %}

    <FilesMatch "php-wrapper\\.cgi$">
        Options +ExecCGI
        Require all granted
        SetHandler cgi-script
    </FilesMatch>
{%- endif %}

    <FilesMatch "\\.(jpg|jpeg|png|gif|ico|css|js|svg|woff|woff2|ttf|eot)$">
        ExpiresActive On
        ExpiresDefault "access plus 1 year"
    </FilesMatch>

    Header always set X-Content-Type-Options "nosniff"
    Header always set X-Frame-Options "SAMEORIGIN"
    Header always set X-XSS-Protection "1; mode=block"

    ErrorLog "{{ log_dir }}/{{ log_prefix }}_error.log"
    CustomLog "{{ log_dir }}/{{ log_prefix }}_access.log" common
</VirtualHost>
"""
)


#: CGI wrapper that Apache invokes for every ``.php`` request
PHP_CGI_WRAPPER = Template(
    """#!/bin/sh
# PHP CGI wrapper for Apache, installed to ${OPENEMR_PATH}/cgi-bin/php-wrapper.cgi
#
# PHP_CGI_BINARY may be set in the VirtualHost to override the binary.

fail() {
    echo "Status: $1"
    echo "Content-Type: text/plain"
    echo ""
    echo "Error: $2"
    exit 1
}

if [ -z "${PHP_CGI_BINARY:-}" ]; then
    PHP_CGI_BINARY="{{ php_cgi_binary }}"
fi

if [ -z "${PHP_CGI_BINARY:-}" ] || [ ! -x "${PHP_CGI_BINARY}" ]; then
    # look next to the extracted tree (the platform directory)
    SEARCH_DIR="$(cd "$(dirname "$0")/../.." 2>/dev/null && pwd)"
    if [ -n "${DOCUMENT_ROOT:-}" ]; then
        SEARCH_DIR="$(dirname "${DOCUMENT_ROOT}") ${SEARCH_DIR}"
    fi
    PHP_CGI_BINARY=""
    for dir in ${SEARCH_DIR}; do
        PHP_CGI_BINARY=$(find "${dir}" -maxdepth 1 -type f -name "php-cgi-*-{{ os_name }}-*" -perm -u+x 2>/dev/null | sort | tail -1)
        [ -n "${PHP_CGI_BINARY}" ] && break
    done
    if [ -z "${PHP_CGI_BINARY}" ]; then
        fail "500 Internal Server Error" "PHP CGI binary not found, set PHP_CGI_BINARY"
    fi
fi

if [ -n "${SCRIPT_FILENAME:-}" ] && [ -f "${SCRIPT_FILENAME}" ]; then
    SCRIPT_FILE="${SCRIPT_FILENAME}"
elif [ -z "${DOCUMENT_ROOT:-}" ]; then
    fail "500 Internal Server Error" "DOCUMENT_ROOT not set"
elif [ -z "${REQUEST_URI:-}" ]; then
    fail "500 Internal Server Error" "REQUEST_URI not set"
else
    REQUEST_PATH="${REQUEST_URI%%\\?*}"
    REQUEST_PATH="${REQUEST_PATH%%#*}"
    if [ "${REQUEST_PATH}" = "/" ] || [ -z "${REQUEST_PATH}" ]; then
        REQUEST_PATH="/index.php"
    fi
    REQUEST_PATH="${REQUEST_PATH#/}"

    case "${REQUEST_PATH}" in
        *..*)
            fail "403 Forbidden" "Invalid path (path traversal attempt detected)"
            ;;
    esac
    SCRIPT_FILE="${DOCUMENT_ROOT}/${REQUEST_PATH}"
fi

if [ -z "${DOCUMENT_ROOT:-}" ]; then
    DOCUMENT_ROOT="$(dirname "${SCRIPT_FILE}")"
fi
CANONICAL_DOCROOT="$(cd "${DOCUMENT_ROOT}" 2>/dev/null && pwd -P)"
if [ -z "${CANONICAL_DOCROOT}" ]; then
    fail "500 Internal Server Error" "Invalid DOCUMENT_ROOT"
fi

CANONICAL_SCRIPT_DIR="$(cd "$(dirname "${SCRIPT_FILE}")" 2>/dev/null && pwd -P)"
if [ -z "${CANONICAL_SCRIPT_DIR}" ]; then
    fail "404 Not Found" "Script directory not found"
fi
CANONICAL_SCRIPT="${CANONICAL_SCRIPT_DIR}/$(basename "${SCRIPT_FILE}")"

case "${CANONICAL_SCRIPT}" in
    "${CANONICAL_DOCROOT}"/*)
        SCRIPT_FILE="${CANONICAL_SCRIPT}"
        ;;
    *)
        fail "403 Forbidden" "Invalid path (outside document root)"
        ;;
esac

if [ ! -f "${SCRIPT_FILE}" ]; then
    fail "404 Not Found" "PHP script file not found"
fi

case "${SCRIPT_FILE}" in
    *.php)
        ;;
    *)
        if ! grep -q "<?php" "${SCRIPT_FILE}" 2>/dev/null; then
            fail "403 Forbidden" "File is not a PHP script (${SCRIPT_FILE})"
        fi
        ;;
esac

# php-cgi refuses to run without it (cgi.force_redirect)
export REDIRECT_STATUS="${REDIRECT_STATUS:-200}"
export SCRIPT_FILENAME="${SCRIPT_FILE}"

if [ "${DEBUG_PHP_WRAPPER:-0}" = "1" ]; then
    echo "Status: 200 OK"
    echo "Content-Type: text/plain"
    echo ""
    echo "PHP_CGI_BINARY: ${PHP_CGI_BINARY}"
    echo "DOCUMENT_ROOT: ${DOCUMENT_ROOT}"
    echo "REQUEST_URI: ${REQUEST_URI:-not set}"
    echo "SCRIPT_NAME: ${SCRIPT_NAME:-not set}"
    echo "PATH_INFO: ${PATH_INFO:-not set}"
    echo "SCRIPT_FILE: ${SCRIPT_FILE}"
    exit 0
fi

exec "${PHP_CGI_BINARY}" "${SCRIPT_FILE}"
"""
)


PHP_FPM_CONF = Template(
    """; php-fpm configuration for OpenEMR
[global]
pid = {{ pid_file }}
error_log = {{ error_log }}
daemonize = {{ 'yes' if daemonize else 'no' }}

[openemr]
{%- if user %}
user = {{ user }}
group = {{ group or user }}
{%- endif %}
listen = {{ listen }}
listen.allowed_clients = 127.0.0.1

pm = dynamic
pm.max_children = {{ max_children }}
pm.start_servers = 2
pm.min_spare_servers = 1
pm.max_spare_servers = 3
pm.max_requests = 500

catch_workers_output = yes
clear_env = no
php_admin_value[memory_limit] = 512M
php_admin_value[max_execution_time] = 60
"""
)


#: bash fragment cloning OpenEMR, installing its dependencies, building the
#: frontend and packaging everything as PHAR, used by the container and the VM
#: build scripts
PREPARE_OPENEMR_SH = Template(
    """# --- Prepare OpenEMR and create the PHAR ---
cd {{ build_dir }}
rm -rf openemr-source openemr-phar openemr.phar

MAX_RETRIES=3
RETRY_COUNT=0
until git clone --depth 1 --branch "${OPENEMR_TAG}" {{ openemr_git_url }} openemr-source; do
    RETRY_COUNT=$((RETRY_COUNT + 1))
    if [ ${RETRY_COUNT} -ge ${MAX_RETRIES} ]; then
        echo "ERROR: Failed to clone OpenEMR after ${MAX_RETRIES} attempts"
        exit 1
    fi
    echo "Clone attempt ${RETRY_COUNT} failed. Retrying in 5 seconds..."
    sleep 5
    rm -rf openemr-source
done

mkdir -p {{ build_dir }}/openemr-phar
(cd openemr-source && git archive HEAD) | tar -x -C {{ build_dir }}/openemr-phar
cd {{ build_dir }}/openemr-phar
rm -rf .git tests/ .github/ docs/

if [ -f "composer.json" ]; then
    echo "Installing production dependencies..."
    COMPOSER_PROCESS_TIMEOUT=0 composer install \\
        --ignore-platform-reqs \\
        --no-dev \\
        --optimize-autoloader \\
        --prefer-dist \\
        --no-interaction || echo "WARNING: composer install had issues, continuing..."
fi

if [ -f "package.json" ]; then
    echo "Building frontend assets..."
    export npm_config_yes=true
    export npm_config_loglevel=warn
    export CI=true
    npm install -g napa gulp-cli || echo "WARNING: Failed to install global npm dependencies"
    npm ci || npm install || echo "WARNING: npm install had issues, continuing..."

    BUILD_SUCCESS=false
    if grep -q '"build"' package.json; then
{%- if filter_npm_output %}
        # only progress lines, the Sass warnings overflow the serial console
        if npm run build > {{ build_dir }}/npm-build.log 2>&1; then
            BUILD_SUCCESS=true
        fi
        grep -Ei "Starting|Finished|Error|fatal" {{ build_dir }}/npm-build.log || true
{%- else %}
        npm run build && BUILD_SUCCESS=true
{%- endif %}
    elif command -v gulp >/dev/null 2>&1 && { [ -f gulpfile.js ] || [ -f Gulpfile.js ]; }; then
        gulp && BUILD_SUCCESS=true
    fi

    if [ "${BUILD_SUCCESS}" != "true" ]; then
        echo "ERROR: Frontend build failed, CSS and JavaScript assets were not compiled"
        exit 1
    fi
fi

cat > {{ build_dir }}/create-phar.php << 'PHARBUILDER'
{{ create_phar_php }}
PHARBUILDER

php -d phar.readonly=0 {{ build_dir }}/create-phar.php {{ build_dir }}/openemr.phar {{ build_dir }}/openemr-phar
if [ ! -f {{ build_dir }}/openemr.phar ]; then
    echo "ERROR: Failed to create PHAR file"
    exit 1
fi
echo "PHAR created"
"""
)


DOCKERFILE_BUILD = Template(
    """FROM {{ base_image }}

ARG PHP_VERSION_FULL={{ php_version_full }}

ENV DEBIAN_FRONTEND=noninteractive

RUN apt-get update && apt-get install -y \\
{%- for pkg in packages %}
    {{ pkg }} \\
{%- endfor %}
    && rm -rf /var/lib/apt/lists/*

# php for composer and box, built from the official php.net sources
RUN cd /tmp && \\
    PHP_INSTALL_DIR="/usr/local/php{{ php_version }}" && \\
    curl -fL -o php-${PHP_VERSION_FULL}.tar.gz "https://www.php.net/distributions/php-${PHP_VERSION_FULL}.tar.gz" && \\
    tar -xzf php-${PHP_VERSION_FULL}.tar.gz && \\
    cd php-${PHP_VERSION_FULL} && \\
    ./configure \\
{%- for flag in configure_flags %}
        {{ flag }} \\
{%- endfor %}
        --prefix=${PHP_INSTALL_DIR} \\
        --with-config-file-path=${PHP_INSTALL_DIR}/etc && \\
    make -j$(nproc) && \\
    make install && \\
    mkdir -p ${PHP_INSTALL_DIR}/etc && \\
    cp php.ini-production ${PHP_INSTALL_DIR}/etc/php.ini && \\
    ln -sf ${PHP_INSTALL_DIR}/bin/php /usr/local/bin/php && \\
    ln -sf ${PHP_INSTALL_DIR}/bin/php /usr/bin/php && \\
    cd / && rm -rf /tmp/php-${PHP_VERSION_FULL}* && \\
    php -v

WORKDIR /build
"""
)


DOCKER_BUILD_INTERNAL = Template(
    """#!/usr/bin/env bash
set -euo pipefail

OPENEMR_TAG="$1"
PHP_VERSION="$2"
STATIC_PHP_CLI_REPO="$3"
STATIC_PHP_CLI_BRANCH="$4"
STATIC_PHP_CLI_COMMIT="$5"
PHP_EXTENSIONS="$6"
TARGET_ARCH="{{ arch }}"

CPU_CORES=$(nproc)
TOTAL_RAM_GB=$(($(grep MemTotal /proc/meminfo | awk '{print $2}') / 1024 / 1024))
PARALLEL_JOBS="${PARALLEL_JOBS:-${CPU_CORES}}"
[ "${PARALLEL_JOBS}" -lt 2 ] && PARALLEL_JOBS=2
if [ -z "${COMPOSER_MEMORY_LIMIT:-}" ]; then
    COMPOSER_MEMORY_LIMIT=$((TOTAL_RAM_GB / 2))
    [ "${COMPOSER_MEMORY_LIMIT}" -gt 4 ] && COMPOSER_MEMORY_LIMIT=4
    [ "${COMPOSER_MEMORY_LIMIT}" -lt 1 ] && COMPOSER_MEMORY_LIMIT=1
    COMPOSER_MEMORY_LIMIT="${COMPOSER_MEMORY_LIMIT}G"
fi
export COMPOSER_MEMORY_LIMIT
export NODE_OPTIONS="--max-old-space-size=$((TOTAL_RAM_GB * 512))"
export MAKEFLAGS="-j${PARALLEL_JOBS}" MAKE_JOBS="${PARALLEL_JOBS}" NPROC="${PARALLEL_JOBS}"
export PYTHONUNBUFFERED=1 PHP_BIN_STREAM=1

echo "CPU cores: ${CPU_CORES}, RAM: ${TOTAL_RAM_GB} GB, jobs: ${PARALLEL_JOBS}, composer memory: ${COMPOSER_MEMORY_LIMIT}"

echo "Step 1/5: Preparing OpenEMR application..."
{{ prepare_openemr }}

echo "Step 2/5: Building static-php-cli from source..."
SPC_BUILD_DIR="/tmp/spc-build"
rm -rf "${SPC_BUILD_DIR}"
cd /tmp

CLONE_ATTEMPT=0
until [ -d "${SPC_BUILD_DIR}/.git" ]; do
    CLONE_ATTEMPT=$((CLONE_ATTEMPT + 1))
    echo "Clone attempt ${CLONE_ATTEMPT}/3..."
    if [ -n "${STATIC_PHP_CLI_COMMIT}" ]; then
        git clone --depth 1 "${STATIC_PHP_CLI_REPO}" "${SPC_BUILD_DIR}" && \\
            git -C "${SPC_BUILD_DIR}" fetch --depth 1 origin "${STATIC_PHP_CLI_COMMIT}" && \\
            git -C "${SPC_BUILD_DIR}" checkout "${STATIC_PHP_CLI_COMMIT}" && break
    else
        git clone --depth 1 --branch "${STATIC_PHP_CLI_BRANCH}" "${STATIC_PHP_CLI_REPO}" "${SPC_BUILD_DIR}" && break
    fi
    rm -rf "${SPC_BUILD_DIR}"
    if [ ${CLONE_ATTEMPT} -ge 3 ]; then
        echo "ERROR: Failed to clone static-php-cli after 3 attempts"
        exit 1
    fi
    sleep $((CLONE_ATTEMPT * 2))
done

cd "${SPC_BUILD_DIR}"
composer install --no-interaction --prefer-dist --optimize-autoloader
php vendor/bin/box compile --no-interaction
if [ -f spc.phar ]; then
    mv spc.phar spc
fi
SPC_BIN="${SPC_BUILD_DIR}/spc"
chmod +x "${SPC_BIN}"
"${SPC_BIN}" --version
"${SPC_BIN}" doctor --version

echo "Step 3/5: Downloading PHP and extension sources..."
cd /tmp
"${SPC_BIN}" doctor --auto-fix || true
DOWNLOAD_ATTEMPT=0
until "${SPC_BIN}" download --with-php="${PHP_VERSION}" --for-extensions="${PHP_EXTENSIONS}" --retry 5; do
    DOWNLOAD_ATTEMPT=$((DOWNLOAD_ATTEMPT + 1))
    if [ ${DOWNLOAD_ATTEMPT} -ge 3 ]; then
        echo "ERROR: Failed to download dependencies after 3 attempts"
        exit 1
    fi
    echo "Download failed, waiting $((DOWNLOAD_ATTEMPT * 30)) seconds before retrying..."
    sleep $((DOWNLOAD_ATTEMPT * 30))
done

echo "Step 4/5: Building static PHP binaries..."
"${SPC_BIN}" build --build-cli --build-cgi --build-fpm --build-micro --debug "${PHP_EXTENSIONS}"

echo "Step 5/5: Combining PHAR with MicroSFX..."
MICRO_SFX=$(find /tmp /build -name "micro.sfx" -type f 2>/dev/null | head -1)
if [ -z "${MICRO_SFX}" ]; then
    echo "ERROR: Could not find micro.sfx"
    exit 1
fi

FINAL_BINARY="/output/openemr-${OPENEMR_TAG}-linux-${TARGET_ARCH}"
php -d memory_limit=4096M "${SPC_BIN}" micro:combine /build/openemr.phar -O "${FINAL_BINARY}"
chmod +x "${FINAL_BINARY}"

for sapi in php:cli php-cgi:cgi php-fpm:fpm; do
    name="${sapi%%:*}"
    kind="${sapi##*:}"
    binary=$(find /tmp /build -type f -path "*/buildroot/bin/${name}" 2>/dev/null | head -1)
    if [ -n "${binary}" ]; then
        cp "${binary}" "/output/php-${kind}-${OPENEMR_TAG}-linux-${TARGET_ARCH}"
        chmod +x "/output/php-${kind}-${OPENEMR_TAG}-linux-${TARGET_ARCH}"
    fi
done
cp /build/openemr.phar "/output/openemr-${OPENEMR_TAG}.phar"

echo "Build complete!"
"""
)


RUNTIME_DOCKERFILE = Template(
    """FROM {{ base_image }}

RUN apt-get update && apt-get install -y --no-install-recommends ca-certificates gosu \\
    && rm -rf /var/lib/apt/lists/* \\
    && useradd --system --home-dir /app --shell /usr/sbin/nologin openemr

COPY php-cli /usr/local/bin/php
COPY openemr.phar /usr/local/share/openemr.phar
{%- if php_ini %}
COPY php.ini /usr/local/etc/php/php.ini
{%- endif %}
COPY docker-entrypoint.sh /usr/local/bin/docker-entrypoint.sh
COPY docker-entrypoint-wrapper.sh /usr/local/bin/docker-entrypoint-wrapper.sh

RUN chmod +x /usr/local/bin/php /usr/local/bin/docker-entrypoint.sh /usr/local/bin/docker-entrypoint-wrapper.sh \\
    && mkdir -p /app/openemr-extracted

WORKDIR /app
EXPOSE {{ container_port }}
ENTRYPOINT ["/usr/local/bin/docker-entrypoint-wrapper.sh"]
"""
)


DOCKER_COMPOSE = Template(
    """services:
  openemr:
    build:
      context: .
      dockerfile: Dockerfile
    image: {{ image }}
    platform: {{ platform }}
    ports:
      - "${OPENEMR_PORT:-{{ container_port }}}:{{ container_port }}"
    environment:
      OPENEMR_PORT: "{{ container_port }}"
    volumes:
      - openemr-data:/app/openemr-extracted
    restart: unless-stopped

volumes:
  openemr-data:
"""
)


DOCKER_ENTRYPOINT = Template(
    """#!/bin/sh
set -e

PORT="${OPENEMR_PORT:-{{ container_port }}}"
WEB_ROOT="/app/openemr-extracted"
PHAR_FILE="/usr/local/share/openemr.phar"
PHP_BIN="/usr/local/bin/php"

if [ ! -d "${WEB_ROOT}" ] || [ -z "$(ls -A "${WEB_ROOT}" 2>/dev/null)" ]; then
    echo "Extracting OpenEMR from PHAR archive..."
    TEMP_EXTRACT="/tmp/openemr-extract-temp"
    mkdir -p "${TEMP_EXTRACT}"
    cat > /tmp/extract.php << 'EOF'
{{ extract_php }}
EOF
    "${PHP_BIN}" -d memory_limit=1024M -d max_execution_time=0 /tmp/extract.php "${PHAR_FILE}" "${TEMP_EXTRACT}"
    rm -f /tmp/extract.php
    mkdir -p "${WEB_ROOT}"
    cp -r "${TEMP_EXTRACT}"/. "${WEB_ROOT}"/
    rm -rf "${TEMP_EXTRACT}"
fi

cat > /tmp/router.php << 'ROUTER'
{{ router_php }}
ROUTER

export OPENEMR_WEB_ROOT="${WEB_ROOT}"
cd "${WEB_ROOT}"

PHP_INI_ARGS=""
if [ -f /usr/local/etc/php/php.ini ]; then
    PHP_INI_ARGS="-c /usr/local/etc/php/php.ini"
fi

echo "Starting OpenEMR web server on port ${PORT}..."
exec "${PHP_BIN}" ${PHP_INI_ARGS} -S "0.0.0.0:${PORT}" -t "${WEB_ROOT}" /tmp/router.php
"""
)


DOCKER_ENTRYPOINT_WRAPPER = Template(
    """#!/bin/sh
set -e

# runs as root to fix the ownership of the volume, then drops privileges
mkdir -p /app/openemr-extracted
chown -R openemr:openemr /app
exec gosu openemr /usr/local/bin/docker-entrypoint.sh "$@"
"""
)


FREEBSD_ENV = Template(
    """{% for name, value in variables.items() -%}
export {{ name }}='{{ value }}'
{% endfor %}"""
)


FREEBSD_BUILD = Template(
    """#!/usr/local/bin/bash
set -euo pipefail

if [ -f /tmp/env.sh ]; then source /tmp/env.sh; fi

echo "Starting build inside FreeBSD VM..."
export ASSUME_ALWAYS_YES=yes
export COMPOSER_ALLOW_SUPERUSER=1
TOTAL_RAM_GB=$(($(sysctl -n hw.physmem) / 1024 / 1024 / 1024))
export NODE_OPTIONS="--max-old-space-size=$((TOTAL_RAM_GB * 512))"
pkg update

pkg install -y \\
{%- for pkg in packages %}
    {{ pkg }} \\
{%- endfor %}
    bash

if [ ! -f /usr/local/bin/php ]; then ln -sf /usr/local/bin/php83 /usr/local/bin/php; fi

mkdir -p /build/artifacts
{{ prepare_openemr }}

echo "Building PHP ${PHP_VERSION} from source..."
PHP_SRC_DIR="/build/php-src"
PHP_INSTALL_DIR="/build/php-static"
mkdir -p "${PHP_INSTALL_DIR}"
PHP_TARBALL="php-${PHP_VERSION_FULL}.tar.xz"

cd /build
if fetch -o "/build/${PHP_TARBALL}" "https://www.php.net/distributions/${PHP_TARBALL}"; then
    tar -xf "/build/${PHP_TARBALL}" -C /build
    mv /build/php-${PHP_VERSION_FULL}/ "${PHP_SRC_DIR}"
else
    echo "Release tarball not found, cloning php-src ${PHP_VERSION}..."
    git clone --depth=1 --branch "PHP-${PHP_VERSION}" https://github.com/php/php-src.git "${PHP_SRC_DIR}" || \\
        git clone --depth=1 https://github.com/php/php-src.git "${PHP_SRC_DIR}"
fi

cd "${PHP_SRC_DIR}"
[ -f configure ] || ./buildconf --force

export CFLAGS="-O2 -I/usr/local/include"
export LDFLAGS="-L/usr/local/lib -Wl,-rpath,/usr/local/lib"
export LIBS="-lm -lpthread -lstdc++ -lintl -liconv -lz"

./configure \\
{%- for flag in configure_flags %}
    {{ flag }} \\
{%- endfor %}
    --prefix="${PHP_INSTALL_DIR}"

gmake -j$(sysctl -n hw.ncpu)
gmake install

echo "Creating distribution package..."
DIST_NAME="openemr-${OPENEMR_TAG}-freebsd-${ARCH}"
DIST_DIR="/build/${DIST_NAME}"
rm -rf "${DIST_DIR}"
mkdir -p "${DIST_DIR}/lib" "${DIST_DIR}/bin"

cp "${PHP_INSTALL_DIR}/bin/php" "${DIST_DIR}/bin/php"
cp "${PHP_INSTALL_DIR}/bin/php-cgi" "${DIST_DIR}/bin/php-cgi"
cp "${PHP_INSTALL_DIR}/sbin/php-fpm" "${DIST_DIR}/bin/php-fpm"
cp /build/openemr.phar "${DIST_DIR}/openemr.phar"

for bin in "${DIST_DIR}"/bin/*; do
    ldd "$bin" | awk '/=>/ {print $3}' | while read -r lib; do
        case "$lib" in
            /usr/local/*)
                [ -f "${DIST_DIR}/lib/$(basename "$lib")" ] || cp "$lib" "${DIST_DIR}/lib/"
                ;;
        esac
    done
done

cat > "${DIST_DIR}/openemr" << 'LAUNCHER'
#!/bin/sh
SCRIPT_DIR="$(cd "$(dirname "$0")" && pwd)"
export LD_LIBRARY_PATH="${SCRIPT_DIR}/lib:${LD_LIBRARY_PATH:-}"
exec "${SCRIPT_DIR}/bin/php" "${SCRIPT_DIR}/openemr.phar" "$@"
LAUNCHER
chmod +x "${DIST_DIR}/openemr"

cd /build
tar -czf "/build/artifacts/${DIST_NAME}.tar.gz" "${DIST_NAME}"
cp /build/openemr.phar "/build/artifacts/openemr-${OPENEMR_TAG}.phar"
cp "${DIST_DIR}/bin/php" "/build/artifacts/php-cli-${OPENEMR_TAG}-freebsd-${ARCH}"
cp "${DIST_DIR}/bin/php-cgi" "/build/artifacts/php-cgi-${OPENEMR_TAG}-freebsd-${ARCH}"
cp "${DIST_DIR}/bin/php-fpm" "/build/artifacts/php-fpm-${OPENEMR_TAG}-freebsd-${ARCH}"

cd /build/artifacts
echo "{{ success_marker }}"
nohup python3 -m http.server {{ artifact_port }} --bind 0.0.0.0 > /tmp/artifact-server.log 2>&1 &
server_ready=""
for i in $(seq 1 10); do
    if sockstat -l -p {{ artifact_port }} | grep -q ":{{ artifact_port }}"; then
        echo "{{ ready_marker }} on port {{ artifact_port }}."
        server_ready=1
        break
    fi
    sleep 1
done
[ -n "$server_ready" ] || echo "{{ server_failed_marker }}"
"""
)
