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

"""In-memory BIG-IP AS3 service.

FakeBigIP answers the AS3 REST calls made through requests.request, so the
controller can be exercised without a BIG-IP:

    device = FakeBigIP()
    with patch('requests.request', side_effect=device.request):
        ...
"""

import itertools
import json
from urllib.parse import urlparse

import requests


AS3_PATH = '/mgmt/shared/appsvcs'


def make_response(status_code, body=None, url=''):
    """Build a requests.Response with a JSON body."""
    r = requests.Response()
    r.status_code = status_code
    r.url = url
    r.encoding = 'utf-8'
    r._content = b'' if body is None else json.dumps(body).encode('utf-8')
    return r


def tenant_errors(tenant):
    """Return the reasons the BIG-IP would reject a tenant."""
    errors = []
    for app_name, app in tenant.items():
        if not isinstance(app, dict) or app.get('class') != 'Application':
            continue
        for obj_name, obj in app.items():
            if not isinstance(obj, dict) or 'pool' not in obj:
                continue
            pool = app.get(obj['pool'])
            if not isinstance(pool, dict) or pool.get('class') != 'Pool':
                errors.append("/%s/%s: pool %s not found" %
                              (app_name, obj_name, obj['pool']))
    return errors


class FakeBigIP(object):
    """FakeBigIP class.

    Keeps the tenants of the AS3 declaration in memory
    """

    def __init__(self, username='admin', password='admin',
                 as3_installed=True, pending_polls=0):
        """Initialize an empty device."""
        self.username = username
        self.password = password
        self.as3_installed = as3_installed
        self.pending_polls = pending_polls
        self.tenants = {}
        self.undeletable = set()
        self.reject_delete = None
        self.calls = []
        self._tasks = {}
        self._task_ids = itertools.count(1)

    def request(self, method, url, **kwargs):
        """Serve one requests.request call."""
        self.calls.append((method, url))
        if kwargs.get('auth') != (self.username, self.password):
            return make_response(401, {'code': 401,
                                       'message': 'Authorization failed'},
                                 url)

        path = urlparse(url).path
        if not path.startswith(AS3_PATH):
            return make_response(404, {'code': 404}, url)
        path = path[len(AS3_PATH):]

        if path == '/info' and method == 'GET':
            if not self.as3_installed:
                return make_response(404, {'code': 404,
                                           'message': 'Public URI path not '
                                           'registered'}, url)
            return make_response(200, {'version': '3.20.0',
                                       'release': '3',
                                       'schemaCurrent': '3.20.0',
                                       'schemaMinimum': '3.0.0'}, url)

        if path.startswith('/task/') and method == 'GET':
            return self._get_task(path[len('/task/'):], url)

        if path == '/declare' or path.startswith('/declare/'):
            names = [n for n in path[len('/declare/'):].split(',') if n]
            if method == 'GET':
                return self._get_declaration(names, url)
            if method == 'POST':
                return self._post_declaration(names, kwargs.get('data'), url)
            if method == 'DELETE':
                return self._delete(names, url)

        return make_response(405, {'code': 405}, url)

    def declaration(self, names=None):
        """Return the ADC declaration for some (or all) tenants."""
        decl = {'class': 'ADC', 'schemaVersion': '3.20.0',
                'id': 'fake-bigip', 'updateMode': 'selective'}
        for name in sorted(self.tenants):
            if not names or name in names:
                decl[name] = self.tenants[name]
        return decl

    def _get_declaration(self, names, url):
        if not self.tenants:
            return make_response(204, None, url)
        if names and not any(n in self.tenants for n in names):
            return make_response(404, {'code': 404,
                                       'message': 'specified tenants not '
                                       'found in declaration'}, url)
        return make_response(200, self.declaration(names), url)

    def _post_declaration(self, tenant_filter, data, url):
        try:
            decl = json.loads(data)
        except (TypeError, ValueError):
            return make_response(400, {'code': 400,
                                       'message': 'invalid JSON'}, url)
        if decl.get('class') == 'AS3':
            decl = decl.get('declaration', {})

        if decl.get('class') != 'ADC':
            results = [{'code': 422, 'message': 'declaration is invalid',
                        'errors': ['/class: should be equal to ADC']}]
        else:
            results = []
            for name in sorted(decl):
                tenant = decl[name]
                if not isinstance(tenant, dict) or \
                        tenant.get('class') != 'Tenant':
                    continue
                if tenant_filter and name not in tenant_filter:
                    continue
                results.append(self._apply_tenant(name, tenant))

        task_id = 'task-%d' % next(self._task_ids)
        self._tasks[task_id] = {'polls': self.pending_polls,
                                'results': results,
                                'declaration': decl}
        return make_response(202, {'id': task_id,
                                   'results': [{'code': 0,
                                                'message': 'Declaration '
                                                'successfully submitted'}]},
                             url)

    def _apply_tenant(self, name, tenant):
        errors = tenant_errors(tenant)
        if errors:
            return {'code': 422, 'message': 'declaration failed',
                    'tenant': name, 'response': '; '.join(errors)}
        if self.tenants.get(name) == tenant:
            return {'code': 200, 'message': 'no change', 'tenant': name}
        self.tenants[name] = tenant
        return {'code': 200, 'message': 'success', 'tenant': name}

    def _get_task(self, task_id, url):
        task = self._tasks.get(task_id)
        if task is None:
            return make_response(404, {'code': 404,
                                       'message': 'task not found'}, url)
        if task['polls'] > 0:
            task['polls'] -= 1
            return make_response(200, {'id': task_id,
                                       'results': [{'message':
                                                    'in progress'}]}, url)
        return make_response(200, {'id': task_id,
                                   'results': task['results'],
                                   'declaration': task['declaration']}, url)

    def _delete(self, names, url):
        if self.reject_delete:
            return make_response(422, {'results': [
                {'code': 422, 'message': self.reject_delete}]}, url)
        results = []
        for name in names:
            if name in self.undeletable:
                results.append({'code': 422, 'message': 'declaration failed',
                                'tenant': name,
                                'response': 'object in use'})
            elif name in self.tenants:
                del self.tenants[name]
                results.append({'code': 200, 'message': 'success',
                                'tenant': name})
            else:
                results.append({'code': 200, 'message': 'no change',
                                'tenant': name})
        return make_response(200, {'results': results}, url)
