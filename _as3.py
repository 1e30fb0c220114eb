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

"""BIG-IP Application Services 3 (AS3) client.

The BigIPAS3 class manages access to the AS3 declaration endpoint of a
BIG-IP:

    * AS3 service info
    * Declaration retrieval per tenant
    * Declaration submission (asynchronous task with polling)
    * Per-tenant declaration deletion
"""

import json
import logging
import time

import requests
from requests.packages.urllib3.exceptions import InsecureRequestWarning

from common import split_names

logger = logging.getLogger('as3')
requests.packages.urllib3.disable_warnings(InsecureRequestWarning)

AS3_PATH = '/mgmt/shared/appsvcs'

# Tenant result messages meaning the tenant converged on the BIG-IP
SUCCESS_MESSAGES = ['success', 'no change']
IN_PROGRESS = 'in progress'


class AS3Error(Exception):
    """Base class for errors talking to the AS3 service."""


class AS3HTTPError(AS3Error):
    """The AS3 service returned an unexpected HTTP status."""

    def __init__(self, method, url, status_code, body):
        """Keep the response body for diagnostics."""
        super(AS3HTTPError, self).__init__(
            "%s %s returned %d: %s" % (method, url, status_code, body))
        self.status_code = status_code
        self.body = body


class AS3NotInstalledError(AS3Error):
    """The AS3 package is not installed on the BIG-IP."""


class AS3DeclarationError(AS3Error):
    """The AS3 service rejected the whole declaration."""

    def __init__(self, message, errors=None):
        """Keep the list of errors reported by the BIG-IP."""
        self.errors = errors or []
        if self.errors:
            message = "%s: %s" % (message, '; '.join(self.errors))
        super(AS3DeclarationError, self).__init__(message)


class AS3TaskTimeoutError(AS3Error):
    """An asynchronous AS3 task did not finish in time."""


class TenantResult(object):
    """TenantResult class.

    Outcome of applying a declaration to one tenant
    """

    def __init__(self, tenant, code, message, response=None):
        """Initialize the result."""
        self.tenant = tenant
        self.code = code
        self.message = message
        self.response = response

    @property
    def succeeded(self):
        """Tenant was created, updated or left unchanged."""
        return self.message in SUCCESS_MESSAGES

    @property
    def changed(self):
        """Tenant configuration was changed on the BIG-IP."""
        return self.message == 'success'

    def __eq__(self, other):
        """Results are compared by value."""
        return (self.tenant, self.code, self.message) == \
            (other.tenant, other.code, other.message)

    def __repr__(self):
        """String representation of object."""
        return "TenantResult(%r, %r, %r)" % (self.tenant, self.code,
                                             self.message)


def parse_results(results):
    """Convert AS3 task results into a list of TenantResult objects.

    Args:
        results: 'results' list of an AS3 task or declare response
    """
    tenant_results = []
    for result in results:
        if 'tenant' not in result:
            continue
        tenant_results.append(TenantResult(
            result['tenant'],
            result.get('code'),
            result.get('message'),
            result.get('response')))
    return tenant_results


class BigIPAS3(object):
    """BigIPAS3 class.

    Wraps the AS3 REST API of a BIG-IP

    Args:
        host: BIG-IP management URL, eg. https://10.10.1.145:443
        username: BIG-IP username
        password: BIG-IP password
        verify: TLS verification (False, True or path to a CA bundle)
        timeout: Seconds to wait for an asynchronous task
        poll_interval: Initial seconds between task polls
    """

    def __init__(self, host, username, password, verify=False, timeout=600,
                 poll_interval=1, max_poll_interval=16):
        """Initialize the BigIPAS3 object."""
        self.host = host.rstrip('/')
        self.username = username
        self.password = password
        self._verify = verify
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._max_poll_interval = max_poll_interval

    def api_req_raw(self, method, path, **kwargs):
        """Send an API request to the BIG-IP and return the response."""
        url = self.host + AS3_PATH + path
        response = requests.request(
            method,
            url,
            auth=(self.username, self.password),
            headers={
                'Accept': 'application/json',
                'Content-Type': 'application/json'
            },
            verify=self._verify,
            **kwargs
        )
        logger.debug("%s %s: %d", method, url, response.status_code)
        return response

    def api_req(self, method, path, expected=(200,), **kwargs):
        """Send an API request and return the JSON response.

        Raises AS3HTTPError if the status is not in 'expected'.
        """
        response = self.api_req_raw(method, path, **kwargs)
        if response.status_code not in expected:
            raise AS3HTTPError(method, response.url or path,
                               response.status_code, response.text)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def get_info(self):
        """Get the version information of the AS3 service."""
        response = self.api_req_raw('GET', '/info')
        if response.status_code == 404:
            raise AS3NotInstalledError(
                "AS3 is not installed on %s" % self.host)
        if response.status_code != 200:
            raise AS3HTTPError('GET', response.url, response.status_code,
                               response.text)
        info = response.json()
        logger.info("AS3 version %s on %s", info.get('version'), self.host)
        return info

    def get_declaration(self, tenants):
        """Get the declaration for a list of tenants.

        Args:
            tenants: Tenant names (list or comma-separated string)

        Returns the ADC declaration, or None if none of the tenants exist.
        """
        names = ','.join(split_names(tenants))
        decl = self.api_req('GET', '/declare/' + names,
                            expected=(200, 204, 404))
        if decl is None or 'class' not in decl:
            # 404 carries an error body rather than a declaration
            return None
        return decl

    def tenants_exist(self, tenants):
        """Check which tenants exist on the BIG-IP.

        Args:
            tenants: Tenant names (list or comma-separated string)

        Returns a dict of tenant name to bool.
        """
        names = split_names(tenants)
        decl = self.get_declaration(names)
        if decl is None:
            return dict((name, False) for name in names)
        return dict((name, name in decl) for name in names)

    def post_declaration(self, declaration, tenant_filter=None):
        """Submit a declaration and wait for the per-tenant results.

        Args:
            declaration: Parsed AS3 declaration
            tenant_filter: Tenant names the submission is restricted to

        Returns a list of TenantResult objects.
        """
        path = '/declare'
        filtered = ','.join(split_names(tenant_filter))
        if filtered:
            path = path + '/' + filtered
        logger.debug("Posting declaration to %s", path)

        task = self.api_req('POST', path, expected=(200, 202),
                            params={'async': 'true'},
                            data=json.dumps(declaration))
        if task is None or 'id' not in task:
            raise AS3Error("No task id in response to POST %s" % path)

        task = self.wait_for_task(task['id'])
        results = task.get('results', [])
        tenant_results = parse_results(results)
        if not tenant_results:
            errors = []
            for result in results:
                errors.extend(result.get('errors', []))
                if 'message' in result and not errors:
                    errors.append(result['message'])
            errors.extend(task.get('errors', []))
            raise AS3DeclarationError("Declaration rejected by BIG-IP",
                                      errors)

        for result in tenant_results:
            if result.succeeded:
                logger.info("Tenant %s: %s", result.tenant, result.message)
            else:
                logger.warning("Tenant %s failed (%s): %s", result.tenant,
                               result.message, result.response)
        return tenant_results

    def get_task(self, task_id):
        """Get an asynchronous AS3 task."""
        return self.api_req('GET', '/task/' + task_id)

    def wait_for_task(self, task_id):
        """Poll an asynchronous AS3 task until it is no longer running."""
        interval = self._poll_interval
        deadline = time.time() + self._timeout
        while True:
            task = self.get_task(task_id)
            results = task.get('results', [])
            if not any(r.get('message') == IN_PROGRESS for r in results):
                return task

            if time.time() >= deadline:
                raise AS3TaskTimeoutError(
                    "AS3 task %s still in progress after %s seconds" %
                    (task_id, self._timeout))
            logger.debug("Task %s in progress, polling again in %s seconds",
                         task_id, interval)
            time.sleep(interval)
            if interval < self._max_poll_interval:
                interval = min(max(interval * 2, 1), self._max_poll_interval)

    def delete_tenants(self, tenants):
        """Delete the declaration of a list of tenants.

        Args:
            tenants: Tenant names (list or comma-separated string)

        Returns the list of tenant names that failed to delete. When the
        BIG-IP rejects the whole request every name is reported as failed.
        """
        names = split_names(tenants)
        if not names:
            return []
        logger.info("Deleting tenants %s", ', '.join(names))
        path = '/declare/' + ','.join(names)
        response = self.api_req_raw('DELETE', path)
        if response.status_code not in (200, 207, 422):
            raise AS3HTTPError('DELETE', response.url or path,
                               response.status_code, response.text)
        body = response.json() if response.content else {}
        results = body.get('results', [])
        tenant_results = parse_results(results)

        errors = [r.get('message') or str(r.get('code')) for r in results
                  if 'tenant' not in r and
                  not 200 <= (r.get('code') or 200) < 300]
        errors.extend(body.get('errors', []))
        if errors or (response.status_code != 200 and not tenant_results):
            logger.error("BIG-IP rejected deletion of tenants %s: %s",
                         ', '.join(names),
                         '; '.join(str(e) for e in errors) or
                         response.status_code)
            return sorted(names)

        failed = []
        for result in tenant_results:
            if not result.succeeded:
                logger.error("Failed to delete tenant %s: %s",
                             result.tenant, result.message)
                failed.append(result.tenant)
        return sorted(failed)
