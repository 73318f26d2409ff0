#!/usr/bin/env python

import requests
from requests.packages.urllib3.exceptions import InsecureRequestWarning
import collections
import json
import logging
import re
import sys
import os
import argparse
import www_authenticate
from getpass import getpass
from urllib.parse import urlparse

# this is a command-line docker registry client, can do following:
# - list tags of a repository
# - delete an image by tag or by digest
#
# run
# registry_client.py -h
# to get more help
#
# important: after deleting images, run the garbage collector
# on your registry host:
# docker run registry:2 bin/registry garbage-collect \
# /etc/docker/registry/config.yml


APPLICATION_VERSION = '1.0.0'

DIGEST_PREFIX = 'sha256:'

MANIFEST_V2 = 'application/vnd.docker.distribution.manifest.v2+json'

AUTH_SCHEME = re.compile(r"^[!#$%&'*+\-.^_`|~\w]+$")


class RegistryError(Exception):
    pass


class TransportError(RegistryError):
    pass


class AuthChallengeError(RegistryError):
    pass


class TokenExchangeError(RegistryError):
    pass


class ResponseError(RegistryError):
    pass


class ApiError(RegistryError):

    def __init__(self, status_code, body):
        super(ApiError, self).__init__(
            'Docker API returned error ({0}): {1}'.format(status_code, body))
        self.status_code = status_code
        self.body = body


class Config(collections.namedtuple('Config', 'url username password verify')):
    """Registry endpoint and credentials, read-only for the process lifetime."""

    __slots__ = ()

    def __new__(cls, url, username=None, password=None, verify=True):
        return super(Config, cls).__new__(cls, url.rstrip('/'), username, password, verify)


class Tag(str):
    pass


class Digest(str):
    pass


def parse_reference(reference):
    """Classify a reference as a content Digest or a Tag needing resolution."""
    if reference.startswith(DIGEST_PREFIX):
        return Digest(reference)
    return Tag(reference)


def parse_authenticate(value):
    """Parse a www-authenticate header into its challenge parameters.

    Every challenge in the header must carry key=value parameters. The
    bearer challenge wins when several are offered, otherwise the first.

    :param value: raw header value, e.g. 'Bearer realm="...",service="..."'
    :returns: dict of parameter name to unquoted value
    :raises AuthChallengeError: the header can't be parsed or has no parameters
    """
    try:
        challenges = www_authenticate.parse(value)
    except (ValueError, AttributeError, TypeError) as e:
        raise AuthChallengeError('malformed www-authenticate header: {0!r}'.format(value)) from e

    # a stray parameter or empty list item shows up as an extra challenge
    for scheme, params in challenges.items():
        if not isinstance(scheme, str) or not AUTH_SCHEME.match(scheme):
            raise AuthChallengeError('malformed www-authenticate header: {0!r}'.format(value))
        if not isinstance(params, dict):
            raise AuthChallengeError('no parameters for {0} in www-authenticate header: {1!r}'.format(scheme, value))

    offered = sorted(challenges.items(), key=lambda challenge: challenge[0].lower() != 'bearer')

    if not offered:
        raise AuthChallengeError('no challenge in www-authenticate header: {0!r}'.format(value))

    return dict(offered[0][1])


def get_error_explanation(context, error_code):
    error_list = {"delete_manifest_405": 'You might want to set REGISTRY_STORAGE_DELETE_ENABLED: "true" in your registry'}

    key = "%s_%s" % (context, error_code)

    if key in error_list.keys():
        return(error_list[key])

    return ''


# sends requests, answering a single token auth challenge per request
class Requests:

    def __init__(self, username=None, password=None, verify=True):
        self.username = username
        self.password = password
        self.verify = verify

    @classmethod
    def from_config(cls, config):
        return cls(config.username, config.password, config.verify)

    def _request(self, method, url, **kwargs):
        kwargs.setdefault('verify', self.verify)
        try:
            res = requests.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise TransportError('{0} {1} failed: {2}'.format(method.upper(), url, e)) from e

        if str(res.status_code)[0] != '2':
            msg = ' \n[error][registry] Request failed'
            msg += '\n[error][registry][request] method {0}: url: {1}'.format(method, url)
            msg += '\n[error][registry][response] status: {0}'.format(res.status_code)
            msg += '\n[error][registry][response] headers: {0}'.format(res.headers)
            msg += '\n[error][registry][response] content: {0}'.format(res.content)
            logging.debug(msg)
        else:
            logging.debug("[registry][request] method {0}: url: {1}: accept".format(method, url))
        return res

    def get_token(self, realm, scope, service):
        params = {}
        if scope:
            params['scope'] = scope
        if service:
            params['service'] = service

        auth = (self.username, self.password or '') if self.username else None

        logging.debug('[auth][request] Requesting token: {0} {1}'.format(realm, params))

        try:
            res = self._request('get', realm, params=params, auth=auth,
                                headers={'Accept': 'application/json'})
        except TransportError as e:
            raise TokenExchangeError('cannot retrieve token: {0}'.format(e)) from e

        try:
            answer = json.loads(res.text)
        except ValueError:
            logging.warning('[auth] token response is not json: {0}'.format(res.content))
            return ''

        if not isinstance(answer, dict):
            logging.warning('[auth] unexpected token response: {0}'.format(answer))
            return ''

        token = answer.get('token') or answer.get('access_token') or ''
        if not token:
            logging.warning('[auth] no token in response from {0}'.format(realm))
        return token

    def request(self, method, url, headers=None, **kwargs):
        headers = dict(headers or {})

        res = self._request(method, url, headers=headers, **kwargs)

        # other error codes are up to the caller
        if res.status_code != 401:
            return res

        header = res.headers.get('Www-Authenticate', '')
        if not header.strip():
            raise AuthChallengeError('empty www-authenticate header on {0} {1}'.format(method.upper(), url))

        oauth = parse_authenticate(header)
        logging.debug('[auth][answer] Auth header: {0}'.format(oauth))

        token = self.get_token(oauth.get('realm', ''), oauth.get('scope', ''), oauth.get('service', ''))

        # single retry, a second 401 is final
        headers = dict(headers, Authorization='Bearer {0}'.format(token))
        return self._request(method, url, headers=headers, **kwargs)


# class to manipulate registry
class Registry:

    def __init__(self, config, http=None):
        self.config = config
        self.http = http if http is not None else Requests.from_config(config)

    def send(self, path, method="GET", headers=None):
        result = self.http.request(
            method,
            "{0}{1}".format(self.config.url, path),
            headers=headers
        )

        if result.status_code >= 300:
            raise ApiError(result.status_code, result.text)

        return result

    def list_tags(self, repository):
        result = self.send("/v2/{0}/tags/list".format(repository),
                           headers={"Accept": "application/json"})

        try:
            tags_list = json.loads(result.text).get('tags')
        except (ValueError, AttributeError):
            raise ResponseError("list_tags: invalid json response: {0}".format(result.text))

        if tags_list is None:
            return []

        if not isinstance(tags_list, list) or not all(isinstance(tag, str) for tag in tags_list):
            raise ResponseError("list_tags: tags is not a list of strings: {0}".format(result.text))

        return tags_list

    def get_tag_digest(self, repository, reference):
        result = self.send("/v2/{0}/manifests/{1}".format(repository, reference),
                           headers={"Accept": MANIFEST_V2})

        digest = result.headers.get('Docker-Content-Digest', '')
        if not digest:
            raise ResponseError("API returned empty digest for {0}:{1}".format(repository, reference))

        return Digest(digest)

    def delete_manifest(self, repository, reference):
        try:
            self.send("/v2/{0}/manifests/{1}".format(repository, reference), method="DELETE")
        except ApiError as e:
            explanation = get_error_explanation("delete_manifest", e.status_code)
            if explanation:
                logging.warning(explanation)
            raise


def delete_image(registry, repository, reference):
    """Delete a manifest by digest, resolving a tag to its digest first."""
    ref = parse_reference(reference)

    if isinstance(ref, Tag):
        logging.debug("Getting digest for tag {0}".format(ref))
        ref = registry.get_tag_digest(repository, ref)

    registry.delete_manifest(repository, ref)
    return ref


def registry_url(value):
    parsed = urlparse(value)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise argparse.ArgumentTypeError("invalid registry URL: {0}".format(value))
    return value


def parse_args(args=None):
    parser = argparse.ArgumentParser(
        prog="docker-registry-client",
        description="A command-line docker registry client.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=("""
IMPORTANT: after deleting images, run the garbage collector
           on your registry host:

   docker run registry:2 bin/registry garbage-collect \\
       /etc/docker/registry/config.yml

for more detail on garbage collection read here:
   https://docs.docker.com/registry/garbage-collection/
                """))
    parser.add_argument(
        '-r', '--registry',
        help="Registry base URL, e.g. https://index.docker.io (env: REGISTRY)",
        type=registry_url,
        default=os.environ.get('REGISTRY'),
        required=not os.environ.get('REGISTRY'),
        metavar="URL")

    parser.add_argument(
        '-u', '--username',
        help="Username (env: REGISTRY_USERNAME)",
        default=os.environ.get('REGISTRY_USERNAME', ''))

    parser.add_argument(
        '--password',
        help="Password (env: REGISTRY_PASSWORD)",
        default=os.environ.get('REGISTRY_PASSWORD', ''))

    parser.add_argument(
        '-w', '--read-password',
        help="Read password from stdin (and prompt if stdin is a TTY); " +
             "the final line-ending character(s) will be removed",
        action='store_true')

    parser.add_argument(
        '--no-validate-ssl',
        help="Disable ssl validation",
        action='store_true')

    parser.add_argument(
        '--debug',
        help='Turn debug output',
        action='store_true')

    parser.add_argument(
        '--version',
        action='version',
        version=APPLICATION_VERSION)

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    tags = subparsers.add_parser('tags', help="List tags")
    tags.add_argument('repository', help="Repository (eg. namespace/repo)")

    delete = subparsers.add_parser('delete', help="Delete an image")
    delete.add_argument('repository', help="Repository (eg. namespace/repo)")
    delete.add_argument('reference', help="Tag or digest")

    return parser.parse_args(args)


def read_password():
    if sys.stdin.isatty():
        # likely interactive usage
        return getpass()

    # allow password to be piped or redirected in
    password = sys.stdin.read()
    if len(password) == 0:
        raise RegistryError("Password was not provided")

    if password[-(len(os.linesep)):] == os.linesep:
        password = password[0:-(len(os.linesep))]
    return password


def list_tags(registry, repository):
    tags = registry.list_tags(repository)
    if tags:
        print("\n".join(tags))


def delete_tag(registry, repository, reference):
    digest = delete_image(registry, repository, reference)
    print("Image {0} deleted".format(digest))


def main_loop(args):

    if args.debug:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    logging.basicConfig(format='%(asctime)s %(levelname)-10s %(message)s',
                        datefmt='%d-%b-%y %H:%M:%S',
                        level=log_level)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    if args.no_validate_ssl:
        requests.packages.urllib3.disable_warnings(InsecureRequestWarning)

    password = args.password
    if args.read_password:
        password = read_password()

    config = Config(args.registry, args.username, password,
                    verify=not args.no_validate_ssl)
    registry = Registry(config)

    if args.command == 'tags':
        list_tags(registry, args.repository)
    elif args.command == 'delete':
        delete_tag(registry, args.repository, args.reference)


def main(argv=None):
    args = parse_args(argv)
    try:
        main_loop(args)
    except RegistryError as e:
        logging.error(e)
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Ctrl-C pressed, quitting")
        sys.exit(1)


if __name__ == "__main__":
    main()
