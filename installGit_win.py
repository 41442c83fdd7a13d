"""Download and silently install Git for Windows.

The installer variant is picked from the processor architecture, the version
from the "latest release" redirect of the git-for-windows release feed. The
installer is downloaded into the temp directory, run without prompts and
removed afterwards.
"""

import argparse
import getpass
import http.client
import logging
import os
import platform
import shutil
import subprocess
import sys
import tempfile
import time
import urllib.parse
import urllib.request

# GitPython raises ImportError at import time when no git executable is found.
# The quiet mode is only set for the import so the installer does not inherit it.
_GIT_REFRESH_UNSET = "GIT_PYTHON_REFRESH" not in os.environ
if _GIT_REFRESH_UNSET:
    os.environ["GIT_PYTHON_REFRESH"] = "quiet"
import git  # noqa: E402

if _GIT_REFRESH_UNSET:
    del os.environ["GIT_PYTHON_REFRESH"]

logger = logging.getLogger("installGit_win")

RELEASE_FEED_URL = "https://github.com/git-for-windows/git/releases/latest"
DOWNLOAD_URL_TEMPLATE = (
    "https://github.com/git-for-windows/git/releases/download/{tag}/Git-{version}-{architecture}.exe"
)
INSTALLER_FLAGS = ["/VERYSILENT", "/NORESTART", "/NOCANCEL", "/SP-", "/SUPPRESSMSGBOXES"]
DEFAULT_INSTALLER_NAME = "GitInstaller.exe"

DOWNLOAD_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 5
DOWNLOAD_TIMEOUT_SECONDS = 600
MIN_FREE_BYTES = 500 * 1024 * 1024

ARCHITECTURES = {
    "x64": "64-bit",
    "amd64": "64-bit",
    "x86_64": "64-bit",
    "64": "64-bit",
    "64-bit": "64-bit",
    "x86": "32-bit",
    "i386": "32-bit",
    "i686": "32-bit",
    "32": "32-bit",
    "32-bit": "32-bit",
}
UNSUPPORTED_ARCHITECTURE_MESSAGE = "Unsupported architecture '{}'. Use one of: auto, x86, x64."


class InstallerError(Exception):
    """Raised when Git for Windows cannot be installed."""


class UnsupportedArchitectureError(InstallerError):
    def __init__(self, architecture):
        super().__init__(UNSUPPORTED_ARCHITECTURE_MESSAGE.format(architecture))
        self.architecture = architecture


class DownloadError(InstallerError):
    def __init__(self, url):
        super().__init__(f"Failed to download {url}")
        self.url = url


def configure_logging(verbose=False, log_path=None):
    """Configure the root logger.

    The console handler is added once; each log file gets its own handler the
    first time it is named. An unwritable log file raises OSError.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    if not getattr(root, "_install_git_configured", False):
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        root.addHandler(console)
        setattr(root, "_install_git_configured", True)

    if log_path:
        log_path = os.path.abspath(log_path)
        if any(getattr(h, "baseFilename", None) == log_path for h in root.handlers):
            return
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)


def is_windows():
    return os.name == "nt"


def detect_architecture(environ=None):
    environ = os.environ if environ is None else environ
    # PROCESSOR_ARCHITEW6432 is only set for a 32-bit process on a 64-bit OS
    detected = (
        environ.get("PROCESSOR_ARCHITEW6432")
        or environ.get("PROCESSOR_ARCHITECTURE")
        or platform.machine()
    )
    logger.debug("Detected processor architecture %r", detected)
    return detected.strip().lower()


def resolve_architecture(requested="auto", environ=None):
    """Map an architecture name or alias to the installer naming token.

    Returns "32-bit" or "64-bit"; raises UnsupportedArchitectureError for
    anything else.
    """
    value = (requested or "auto").strip().lower()
    if value == "auto":
        value = detect_architecture(environ)

    try:
        architecture = ARCHITECTURES[value]
    except KeyError:
        raise UnsupportedArchitectureError(value) from None

    logger.info("Using %s installer", architecture)
    return architecture


def _proxy_with_credentials(proxy, credentials):
    parts = urllib.parse.urlsplit(proxy if "://" in proxy else f"http://{proxy}")
    user = urllib.parse.quote(credentials[0], safe="")
    password = urllib.parse.quote(credentials[1], safe="")
    host = parts.netloc.rsplit("@", 1)[-1]
    return parts._replace(netloc=f"{user}:{password}@{host}").geturl()


def build_opener(proxy=None, credentials=None):
    """Return a urllib opener, optionally routed through an explicit proxy.

    credentials is a (user, password) pair; it is embedded in the proxy URL,
    which makes urllib send it as Proxy-Authorization. Without an explicit
    proxy the credentials go to the proxies from the environment.
    """
    if proxy:
        proxies = {"http": proxy, "https": proxy}
    else:
        proxies = urllib.request.getproxies()
        if not credentials:
            # urllib picks up HTTP_PROXY / HTTPS_PROXY from the environment
            return urllib.request.build_opener()
        if not any(scheme != "no" for scheme in proxies):
            raise InstallerError("--proxy-credential needs --proxy or a proxy environment variable.")

    if credentials:
        proxies = {
            scheme: value if scheme == "no" else _proxy_with_credentials(value, credentials)
            for scheme, value in proxies.items()
        }

    logger.debug("Routing requests through proxy")
    return urllib.request.build_opener(urllib.request.ProxyHandler(proxies))


def prompt_proxy_credentials():
    user = input("Proxy user name: ")
    password = getpass.getpass("Proxy password: ")
    return user, password


def parse_release_tag(redirect_url):
    """Return the last path segment of the release page URL, e.g. 'v2.47.0.windows.2'."""
    path = urllib.parse.urlsplit(redirect_url).path.rstrip("/")
    tag = path.rsplit("/", 1)[-1]
    if not tag or tag == "latest":
        raise InstallerError(f"Could not determine the latest release from {redirect_url}")
    return tag


def version_from_tag(tag):
    """Turn a release tag into the version used in installer file names.

    v2.47.0.windows.1 -> 2.47.0
    v2.47.0.windows.2 -> 2.47.0.2
    """
    version = tag[1:] if tag.startswith("v") else tag
    version, _, build = version.partition(".windows.")
    if build and build != "1":
        version = f"{version}.{build}"
    return version


def download_url(tag, architecture):
    return DOWNLOAD_URL_TEMPLATE.format(
        tag=tag, version=version_from_tag(tag), architecture=architecture
    )


def latest_release_tag(opener, feed_url=RELEASE_FEED_URL):
    logger.info("Looking up the latest release at %s", feed_url)
    try:
        with opener.open(feed_url, timeout=DOWNLOAD_TIMEOUT_SECONDS) as response:
            redirect_url = response.geturl()
    except (OSError, http.client.HTTPException) as e:
        raise InstallerError(f"Could not reach the release feed {feed_url}: {e}") from e

    logger.debug("Release feed redirected to %s", redirect_url)
    return parse_release_tag(redirect_url)


def resolve_download_url(architecture, opener, feed_url=RELEASE_FEED_URL):
    tag = latest_release_tag(opener, feed_url)
    url = download_url(tag, architecture)
    logger.info("Latest release is %s, installer at %s", tag, url)
    return url


def is_local_source(source):
    scheme = urllib.parse.urlsplit(source).scheme
    # a single letter scheme is a Windows drive, e.g. C:\Downloads\Git.exe
    return scheme in ("", "file") or len(scheme) == 1


def local_path(source):
    parts = urllib.parse.urlsplit(source)
    if parts.scheme == "file":
        return urllib.request.url2pathname(parts.path)
    return source


def installer_file_name(source):
    if is_local_source(source):
        name = os.path.basename(local_path(source))
    else:
        name = os.path.basename(urllib.parse.urlsplit(source).path)
    return name or DEFAULT_INSTALLER_NAME


def _download_once(url, destination, opener):
    with opener.open(url, timeout=DOWNLOAD_TIMEOUT_SECONDS) as response:
        status = getattr(response, "status", 200)
        if status != 200:
            raise InstallerError(f"Unexpected HTTP status {status}")
        with open(destination, "wb") as out_file:
            shutil.copyfileobj(response, out_file)


def download_git_installer(
    source,
    destination,
    opener,
    attempts=DOWNLOAD_ATTEMPTS,
    delay=RETRY_DELAY_SECONDS,
    sleep=None,
):
    """Fetch the installer from a URL or a local path into destination.

    HTTP downloads are retried with a fixed delay; once every attempt failed a
    DownloadError naming the original URL is raised.
    """
    if is_local_source(source):
        path = local_path(source)
        logger.info("Copying Git installer from %s", path)
        try:
            shutil.copyfile(path, destination)
        except OSError as e:
            logger.error("Copy of %s failed: %s", path, e)
            raise DownloadError(source) from e
        logger.info("Copied Git installer to %s", destination)
        return destination

    if sleep is None:
        sleep = time.sleep
    last_error = None
    for attempt in range(1, attempts + 1):
        logger.info("Downloading Git installer (attempt %d/%d)...", attempt, attempts)
        try:
            _download_once(source, destination, opener)
        except (OSError, http.client.HTTPException, InstallerError) as e:
            last_error = e
            logger.warning("Download attempt %d of %s failed: %s", attempt, source, e)
            if attempt < attempts:
                sleep(delay)
            continue

        logger.info("Downloaded Git installer to %s", destination)
        return destination

    logger.error("Giving up on %s after %d attempts", source, attempts)
    raise DownloadError(source) from last_error


def has_enough_disk_space(path, required=MIN_FREE_BYTES):
    free = shutil.disk_usage(path).free
    logger.debug("%d MiB free in %s", free // (1024 * 1024), path)
    return free >= required


def install_git(installer_path, flags=INSTALLER_FLAGS):
    argv = [installer_path, *flags]
    logger.info("Installing Git silently...")
    logger.debug("CMD %s", subprocess.list2cmdline(argv))
    try:
        subprocess.run(argv, check=True)
    except subprocess.CalledProcessError as e:
        raise InstallerError(f"Failed to install Git: {e}") from e
    except OSError as e:
        raise InstallerError(f"Could not start {installer_path}: {e}") from e
    logger.info("Git installation completed.")


def remove_installer(installer_path):
    try:
        os.remove(installer_path)
    except FileNotFoundError:
        return
    logger.info("Removed installer %s", installer_path)


def default_git_executable(environ=None):
    """Return git.exe of a default install, or None.

    A fresh install is not on this process's PATH yet, so it is looked up in
    the Program Files directories.
    """
    environ = os.environ if environ is None else environ
    for variable in ("ProgramW6432", "ProgramFiles", "ProgramFiles(x86)"):
        root = environ.get(variable)
        if not root:
            continue
        candidate = os.path.join(root, "Git", "cmd", "git.exe")
        if os.path.isfile(candidate):
            return candidate
    return None


def installed_git_version(executable=None):
    """Return the installed Git version as a string, or None when Git is missing."""
    try:
        if executable:
            git.refresh(executable)
        version_info = git.Git().version_info
    except (git.exc.GitCommandNotFound, git.exc.GitCommandError) as e:
        logger.debug("No usable git executable: %s", e)
        return None
    return ".".join(str(part) for part in version_info)


def install(args, opener=None):
    """Run the whole install flow for parsed command-line arguments.

    Returns the process exit code; failures raise InstallerError.
    """
    architecture = resolve_architecture(args.architecture)

    if not is_windows() and not args.dry_run:
        raise InstallerError("This script is designed for Windows only.")

    if not args.force:
        version = installed_git_version()
        if version:
            logger.info("Git %s is already installed.", version)
            return 0

    download_dir = args.download_dir or tempfile.gettempdir()
    if not has_enough_disk_space(download_dir):
        logger.warning(
            "Less than %d MiB free in %s, not installing Git.",
            MIN_FREE_BYTES // (1024 * 1024),
            download_dir,
        )
        return 0

    if opener is None:
        credentials = prompt_proxy_credentials() if args.proxy_credential else None
        opener = build_opener(args.proxy, credentials)

    source = args.installer or resolve_download_url(architecture, opener)
    installer_path = os.path.join(download_dir, installer_file_name(source))
    # the copy is deleted afterwards, so it must never be the caller's file
    if is_local_source(source) and os.path.abspath(local_path(source)) == os.path.abspath(installer_path):
        raise InstallerError(f"{installer_path} is already in the download directory, pick another --download-dir.")

    if args.dry_run:
        logger.info("Dry run: would fetch %s to %s", source, installer_path)
        logger.info(
            "Dry run: would run %s", subprocess.list2cmdline([installer_path, *INSTALLER_FLAGS])
        )
        return 0

    try:
        download_git_installer(source, installer_path, opener)
        install_git(installer_path)
    finally:
        remove_installer(installer_path)

    version = installed_git_version(default_git_executable())
    if not version:
        raise InstallerError("Git installation failed: git could not be found afterwards.")
    logger.info("Git %s was installed successfully.", version)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog="install-git-win",
        description="Download and silently install the latest Git for Windows.",
    )
    parser.add_argument(
        "-a",
        "--architecture",
        default=os.environ.get("GIT_INSTALL_ARCHITECTURE", "auto"),
        help="auto (default), x86 or x64",
    )
    parser.add_argument(
        "-n", "--dry-run", action="store_true", help="show what would be done, change nothing"
    )
    parser.add_argument("--proxy", help="proxy URL for all downloads")
    parser.add_argument(
        "--proxy-credential",
        action="store_true",
        help="prompt for a proxy user name and password",
    )
    parser.add_argument("--installer", help="installer path or URL to use instead of the latest release")
    parser.add_argument("--download-dir", help="directory for the downloaded installer")
    parser.add_argument(
        "-f", "--force", action="store_true", help="install even if Git is already installed"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--log-file", help="also write the log to this file")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        configure_logging(args.verbose, args.log_file)
    except OSError as e:
        logger.error("Cannot write log file %s: %s", args.log_file, e)
        return 1

    try:
        return install(args)
    except InstallerError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
