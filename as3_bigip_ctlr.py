#!/usr/bin/env python3
#
# Copyright 2019 F5 Networks
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""as3-bigip-ctlr.

as3-bigip-ctlr manages F5 Application Services 3 (AS3) declarations on a
BIG-IP. It submits a declaration, records which tenants were applied, and
reconciles that record with the BIG-IP on every run.

A declaration may hold several tenants. Tenants that fail on the BIG-IP are
reported but do not abort the tenants that succeeded; they show up as pending
changes until the declaration is fixed.

### Configuration
Options can be given on the command line, through F5_CC_* environment
variables, or in a config file (--config-file).
A tenant filter (--tenant-filter) restricts which tenants of the declaration
are managed; other tenants are never created, changed or deleted.
"""

import json
import logging
import os
import os.path
import sys
from urllib.parse import urlparse

import configargparse
import requests

from common import (set_logging_args, set_bigip_auth_args, setup_logging,
                    get_bigip_auth_params, split_names, list_diff,
                    list_intersect)
from _as3 import AS3Error, BigIPAS3


logger = logging.getLogger('controller')

actions = ['apply', 'plan', 'show', 'check', 'destroy']


class InvalidDeclarationError(ValueError):
    """The as3_json input is not a usable AS3 declaration.

    Raised before anything is sent to the BIG-IP.
    """


class DeclarationApplyError(Exception):
    """No tenant of the declaration could be applied."""

    def __init__(self, failed_tenants):
        """Keep the names of the failed tenants."""
        self.failed_tenants = failed_tenants
        super(DeclarationApplyError, self).__init__(
            "Failed to apply tenants: %s" % ', '.join(failed_tenants))


class DeclarationDeleteError(Exception):
    """One or more tenants could not be deleted from the BIG-IP."""

    def __init__(self, failed_tenants):
        """Keep the names of the failed tenants."""
        self.failed_tenants = failed_tenants
        super(DeclarationDeleteError, self).__init__(
            "Failed to delete tenants: %s" % ', '.join(failed_tenants))


class TenantCheckError(Exception):
    """Tenant presence on the BIG-IP is not what was expected."""


def _reject_duplicate_keys(pairs):
    obj = {}
    for key, value in pairs:
        if key in obj:
            raise ValueError("duplicate key %r" % key)
        obj[key] = value
    return obj


def get_adc(declaration):
    """Return the ADC object of a declaration.

    Args:
        declaration: Parsed AS3 request or ADC declaration
    """
    if isinstance(declaration, dict):
        if declaration.get('class') == 'AS3':
            declaration = declaration.get('declaration')
        if isinstance(declaration, dict) and \
                declaration.get('class') == 'ADC':
            return declaration
    raise InvalidDeclarationError('"as3_json" is not an AS3 declaration')


def validate_as3_json(value):
    """Parse and validate the as3_json input.

    Args:
        value: AS3 declaration as a JSON string
    """
    try:
        declaration = json.loads(value,
                                 object_pairs_hook=_reject_duplicate_keys)
    except (TypeError, ValueError) as e:
        raise InvalidDeclarationError(
            '"as3_json" contains an invalid JSON: %s' % e)
    get_adc(declaration)
    return declaration


def get_tenants(declaration):
    """Return the sorted tenant names of a declaration."""
    adc = get_adc(declaration)
    return sorted(name for name, value in adc.items()
                  if isinstance(value, dict) and value.get('class') == 'Tenant')


def get_tenant_config(declaration, tenant):
    """Return the configuration of one tenant of a declaration."""
    return get_adc(declaration).get(tenant)


def parse_tenant_filter(value):
    """Parse a comma-separated tenant filter into a list of names."""
    return split_names(value)


def filter_tenants(tenants, tenant_filter):
    """Return the tenants allowed by the tenant filter.

    Args:
        tenants: Tenant names of a declaration
        tenant_filter: Comma-separated allow-list; empty allows all
    """
    allowed = parse_tenant_filter(tenant_filter)
    if not allowed:
        return sorted(tenants)

    unknown = list_diff(allowed, tenants)
    if unknown:
        logger.warning("Tenant filter names tenants not in the declaration: "
                       "%s", ', '.join(unknown))
    return list_intersect(tenants, allowed)


class Plan(object):
    """Plan class.

    Tenant changes needed to converge the BIG-IP on the declaration
    """

    def __init__(self, create=None, update=None, delete=None):
        """Initialize the Plan."""
        self.create = create or []
        self.update = update or []
        self.delete = delete or []

    @property
    def empty(self):
        """No change is pending."""
        return not (self.create or self.update or self.delete)

    def describe(self):
        """Return one line per pending tenant change."""
        lines = []
        for action, tenants in (('create', self.create),
                                ('update', self.update),
                                ('delete', self.delete)):
            for tenant in tenants:
                lines.append("%s tenant %s" % (action, tenant))
        return lines

    def __eq__(self, other):
        """Plans are compared by value."""
        return (self.create, self.update, self.delete) == \
            (other.create, other.update, other.delete)

    def __repr__(self):
        """String representation of object."""
        return "Plan(create=%r, update=%r, delete=%r)" % (
            self.create, self.update, self.delete)


class AS3Resource(object):
    """AS3Resource class.

    Manages the tenants of one AS3 declaration on a BIG-IP.

    The state records the tenants this resource owns ('tenant_list') and the
    configuration last applied to each of them ('applied'). Only owned
    tenants are ever deleted.

    Args:
        bigip: BigIPAS3 client
        as3_json: Declaration as a JSON string
        tenant_filter: Comma-separated list of tenants to manage
        state: State from a previous run
    """

    def __init__(self, bigip, as3_json, tenant_filter=None, state=None):
        """Initialize the AS3Resource object."""
        self._bigip = bigip
        self._as3_json = as3_json
        self._tenant_filter = tenant_filter or ''
        self.state = state or {}

    @property
    def tenant_list(self):
        """Tenants owned by this resource."""
        return list(self.state.get('tenant_list', []))

    @property
    def id(self):
        """Resource id: the owned tenants, comma-separated."""
        return self.state.get('id', '')

    def _set_state(self, applied, as3_json=None):
        tenant_list = sorted(applied)
        if not tenant_list:
            self.state = {}
            return
        self.state = {
            'id': ','.join(tenant_list),
            'as3_json': (as3_json if as3_json is not None
                         else self.state.get('as3_json')),
            'tenant_filter': self._tenant_filter,
            'tenant_list': tenant_list,
            'applied': applied
        }

    def _submit(self, declaration, managed):
        """Post the declaration and record the successful tenants."""
        self._bigip.get_info()
        results = self._bigip.post_declaration(declaration,
                                               self._tenant_filter)

        applied = dict(self.state.get('applied', {}))
        succeeded = []
        failed = []
        for result in results:
            if result.tenant not in managed:
                continue
            if result.succeeded:
                applied[result.tenant] = get_tenant_config(declaration,
                                                           result.tenant)
                succeeded.append(result.tenant)
            else:
                failed.append(result.tenant)
        self._set_state(applied, self._as3_json)

        if failed:
            if not succeeded:
                raise DeclarationApplyError(sorted(failed))
            logger.warning("Partial success, tenants not applied: %s",
                           ', '.join(sorted(failed)))
        return results

    def create(self):
        """Submit the declaration to the BIG-IP."""
        declaration = validate_as3_json(self._as3_json)
        managed = filter_tenants(get_tenants(declaration),
                                 self._tenant_filter)
        if not managed:
            raise InvalidDeclarationError(
                '"as3_json" has no tenant to manage')

        logger.info("Creating tenants %s", ', '.join(managed))
        return self._submit(declaration, managed)

    def read(self):
        """Refresh the state from the tenants present on the BIG-IP."""
        owned = self.tenant_list
        if not owned:
            return self.state

        current = self._bigip.get_declaration(owned) or {}
        applied = dict(self.state.get('applied', {}))
        for tenant in owned:
            if tenant not in current:
                logger.warning("Tenant %s no longer exists on the BIG-IP",
                               tenant)
                applied.pop(tenant, None)
            elif current[tenant] != applied.get(tenant):
                logger.info("Tenant %s was changed outside of this "
                            "resource", tenant)
                applied[tenant] = current[tenant]
        self._set_state(applied, self.state.get('as3_json'))
        return self.state

    def _diff(self, declaration):
        desired = get_tenants(declaration)
        owned = self.tenant_list
        applied = self.state.get('applied', {})

        update = [t for t in list_intersect(desired, owned)
                  if get_tenant_config(declaration, t) != applied.get(t)]
        return Plan(create=list_diff(desired, owned),
                    update=update,
                    delete=list_diff(owned, desired))

    def plan(self):
        """Return the changes needed to converge on the declaration."""
        declaration = validate_as3_json(self._as3_json)
        self.read()
        return self._diff(declaration)

    def update(self):
        """Converge the BIG-IP on a changed declaration."""
        declaration = validate_as3_json(self._as3_json)
        managed = filter_tenants(get_tenants(declaration),
                                 self._tenant_filter)

        if not managed:
            raise InvalidDeclarationError(
                '"as3_json" has no tenant to manage')

        applied = dict(self.state.get('applied', {}))

        # Still declared but outside the filter: stop managing, keep on BIG-IP
        released = list_diff(list_intersect(self.tenant_list,
                                            get_tenants(declaration)),
                             managed)
        if released:
            logger.info("Tenants %s are no longer managed, leaving them on "
                        "the BIG-IP", ', '.join(released))
            for tenant in released:
                applied.pop(tenant, None)

        removed = list_diff(self.tenant_list, get_tenants(declaration))
        if removed:
            logger.info("Removing tenants %s", ', '.join(removed))
            failed = self._bigip.delete_tenants(removed)
            for tenant in list_diff(removed, failed):
                applied.pop(tenant, None)
            self._set_state(applied, self.state.get('as3_json'))
            if failed:
                raise DeclarationDeleteError(failed)
        else:
            self._set_state(applied, self.state.get('as3_json'))

        logger.info("Updating tenants %s", ', '.join(managed))
        return self._submit(declaration, managed)

    def delete(self):
        """Delete the owned tenants from the BIG-IP."""
        owned = self.tenant_list
        if not owned:
            self.state = {}
            return

        failed = self._bigip.delete_tenants(owned)
        applied = dict(self.state.get('applied', {}))
        for tenant in list_diff(owned, failed):
            applied.pop(tenant, None)
        self._set_state(applied, self.state.get('as3_json'))
        if failed:
            raise DeclarationDeleteError(failed)

    def apply(self):
        """Create or update so that the BIG-IP matches the declaration."""
        if not self.state:
            return self.create()

        validate_as3_json(self._as3_json)
        previous_filter = sorted(parse_tenant_filter(
            self.state.get('tenant_filter')))
        filter_changed = \
            sorted(parse_tenant_filter(self._tenant_filter)) != previous_filter
        if self.plan().empty and not filter_changed:
            logger.info("No changes, tenants %s are up to date",
                        ', '.join(self.tenant_list))
            return []
        return self.update()


def check_tenants(bigip, names, exists=True):
    """Verify the presence (or absence) of tenants on the BIG-IP.

    Args:
        bigip: BigIPAS3 client
        names: Tenant names, comma-separated
        exists: Whether the tenants are expected to exist
    """
    present = bigip.tenants_exist(names)
    wrong = sorted(name for name, found in present.items() if found != exists)
    if wrong:
        raise TenantCheckError(
            "Tenants %s %s on BIG-IP %s" % (
                ', '.join(wrong),
                'missing' if exists else 'still present',
                bigip.host))
    return present


def load_state(path):
    """Load the resource state from a file, empty if there is none."""
    if not os.path.exists(path):
        return {}
    with open(path, 'r') as state_file:
        return json.load(state_file)


def save_state(path, state):
    """Write the resource state to a file, removing it when empty."""
    if not state:
        if os.path.exists(path):
            os.remove(path)
        return
    with open(path, 'w') as state_file:
        json.dump(state, state_file, indent=2, sort_keys=True)


def get_arg_parser():
    """Create the parser for the command-line args."""
    parser = configargparse.ArgParser()
    parser.add_argument("--config-file", "-c",
                        is_config_file=True,
                        help="Config file path")
    parser.add_argument("--longhelp",
                        help="Print out configuration details",
                        action="store_true")
    parser.add_argument("--hostname",
                        env_var='F5_CC_BIGIP_HOSTNAME',
                        help="F5 BIG-IP hostname")
    parser.add_argument("--username",
                        env_var='F5_CC_BIGIP_USERNAME',
                        help="F5 BIG-IP username")
    parser.add_argument("--password",
                        env_var='F5_CC_BIGIP_PASSWORD',
                        help="F5 BIG-IP password")
    parser.add_argument("--ca-cert",
                        env_var='F5_CC_BIGIP_CA_CERT',
                        help="CA certificate for BIG-IP HTTPS connections")
    parser.add_argument("--action",
                        env_var='F5_CC_AS3_ACTION',
                        choices=actions,
                        default='apply',
                        help="What to do: apply, plan, show, check or "
                        "destroy")
    parser.add_argument("--as3-json",
                        env_var='F5_CC_AS3_JSON',
                        help="Path to the AS3 declaration file")
    parser.add_argument("--tenant-filter",
                        env_var='F5_CC_TENANT_FILTER',
                        help="Comma-separated list of the tenants of the "
                        "declaration to manage")
    parser.add_argument("--state-file",
                        env_var='F5_CC_STATE_FILE',
                        default='as3_state.json',
                        help="File recording the tenants owned by this "
                        "declaration")
    parser.add_argument("--tenant",
                        env_var='F5_CC_CHECK_TENANTS',
                        help="Comma-separated tenants to verify with "
                        "--action check")
    parser.add_argument("--absent",
                        action="store_true",
                        help="With --action check, verify that the tenants "
                        "do not exist")
    parser.add_argument('--timeout', type=int,
                        env_var='F5_CC_AS3_TIMEOUT',
                        default=600,
                        help="Seconds to wait for an AS3 task to finish")
    parser.add_argument('--poll-interval', type=int,
                        env_var='F5_CC_AS3_POLL_INTERVAL',
                        default=1,
                        help="Initial seconds between AS3 task polls")
    parser.add_argument("--version",
                        help="Print out version information and exit",
                        action="store_true")

    parser = set_logging_args(parser)
    parser = set_bigip_auth_args(parser)
    return parser


def parse_args(version_data, argv=None):
    """Entry point for parsing command-line args."""
    arg_parser = get_arg_parser()
    args = arg_parser.parse_args(argv)

    if args.longhelp:
        print(__doc__)
        sys.exit()
    if args.version:
        print('Version: ', version_data['version'],
              '\nBuild: ', version_data['build'])
        sys.exit()

    if not args.hostname:
        arg_parser.error('argument --hostname is required: please ' +
                         'specify')

    credentials = get_bigip_auth_params(args)
    if credentials is not None:
        args.username, args.password = credentials
    if not args.username:
        arg_parser.error('argument --username is required: please ' +
                         'specify')
    if not args.password:
        arg_parser.error('argument --password is required: please ' +
                         'specify')
    if args.timeout < 1:
        arg_parser.error('argument --timeout must be > 0')
    if args.poll_interval < 0:
        arg_parser.error('argument --poll-interval must be >= 0')

    if args.action in ['apply', 'plan'] and not args.as3_json:
        arg_parser.error('argument --as3-json is required for --action %s'
                         % args.action)
    if args.as3_json and not os.path.isfile(args.as3_json):
        arg_parser.error('argument --as3-json: no such file: %s'
                         % args.as3_json)
    if args.action == 'check' and not split_names(args.tenant):
        arg_parser.error('argument --tenant is required for --action check')

    if not urlparse(args.hostname).scheme:
        args.hostname = "https://" + args.hostname
    url = urlparse(args.hostname)

    if url.scheme and url.scheme != 'https':
        arg_parser.error(
            'argument --hostname requires \'https\' protocol')
    if url.path and url.path != '/':
        arg_parser.error(
            'argument --hostname: path must be empty or \'/\'')

    args.host = url.hostname
    args.port = url.port
    if not args.port:
        args.port = 443

    return args


def get_version_data():
    """Read version/build info."""
    version_data = {}
    version_path = os.path.join(os.path.dirname(os.path.abspath(__file__)),
                                'VERSION_BUILD.json')
    try:
        with open(version_path, 'r') as version_file:
            version_data = json.load(version_file)
    except (IOError, ValueError):
        version_data['version'] = 'UNKNOWN_VERSION'
        version_data['build'] = 'UNKNOWN_BUILD'
    return version_data


def run(args, bigip):
    """Run the requested action and return the exit code."""
    state = load_state(args.state_file)

    as3_json = state.get('as3_json')
    if args.as3_json:
        with open(args.as3_json, 'r') as as3_file:
            as3_json = as3_file.read()

    tenant_filter = args.tenant_filter
    if tenant_filter is None:
        tenant_filter = state.get('tenant_filter')

    resource = AS3Resource(bigip, as3_json, tenant_filter, state)

    if args.action == 'check':
        present = check_tenants(bigip, args.tenant, not args.absent)
        for name in sorted(present):
            print("%s: %s" % (name, 'present' if present[name] else 'absent'))
        return 0

    if args.action == 'show':
        resource.read()
        save_state(args.state_file, resource.state)
        print(json.dumps(resource.state, indent=2, sort_keys=True))
        return 0

    if args.action == 'destroy':
        try:
            resource.delete()
        finally:
            save_state(args.state_file, resource.state)
        return 0

    if args.action == 'plan':
        plan = resource.plan()
        save_state(args.state_file, resource.state)
        for line in plan.describe():
            print(line)
        if plan.empty:
            print("No changes.")
            return 0
        return 2

    try:
        resource.apply()
    finally:
        save_state(args.state_file, resource.state)
    logger.info("Managed tenants: %s", resource.id or 'none')
    return 0


def main(argv=None):
    """Command-line entry point."""
    version_data = get_version_data()

    args = parse_args(version_data, argv)

    setup_logging(logging.getLogger(), args.syslog_socket, args.log_format,
                  args.log_level)

    logger.info("Version: %s, Build: %s", version_data['version'],
                version_data['build'])

    bigip = BigIPAS3("https://%s:%d" % (args.host, args.port),
                     args.username,
                     args.password,
                     verify=args.ca_cert or False,
                     timeout=args.timeout,
                     poll_interval=args.poll_interval)

    try:
        return run(args, bigip)
    except InvalidDeclarationError as e:
        logger.error("Configuration error: %s", e)
    except (DeclarationApplyError, DeclarationDeleteError,
            TenantCheckError) as e:
        logger.error("%s", e)
    except AS3Error as e:
        logger.error("AS3 Error: %s", e)
    except requests.exceptions.ConnectionError as e:
        logger.error("Connection error: %s", e)
    except Exception:
        logger.exception("Unexpected error!")
        raise
    return 1


if __name__ == '__main__':
    sys.exit(main())
