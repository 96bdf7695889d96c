"""
IAM service manager for roles, instance profiles and customer managed policies.
"""
import logging
from typing import Dict, List, Optional

from botocore.exceptions import ClientError

from .base import BaseServiceManager, ResourceFilter, is_not_found, tags_to_dict
from ..core.models import Resource

logger = logging.getLogger(__name__)


class IAMServiceManager(BaseServiceManager):
    """Service manager for IAM identities left behind by deployments."""

    resource_types = ('instance_profile', 'iam_role', 'iam_policy')

    @property
    def service_name(self) -> str:
        return 'iam'

    def get_role(self, role_name: str) -> Optional[Resource]:
        try:
            role = self.client.get_role(RoleName=role_name)['Role']
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return self._role_resource(role)

    def get_instance_profile(self, profile_name: str) -> Optional[Resource]:
        try:
            profile = self.client.get_instance_profile(InstanceProfileName=profile_name)['InstanceProfile']
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return self._profile_resource(profile)

    def find_policy(self, policy_name: str) -> Optional[Resource]:
        """Look up a customer managed policy by name."""
        for policy in self._paginate('list_policies', 'Policies', Scope='Local'):
            if policy['PolicyName'] == policy_name:
                return self._policy_resource(policy)
        return None

    def caller_arn(self) -> str:
        """ARN of the identity the session runs as, with assumed roles mapped to their role."""
        arn = self.session.client('sts', region_name=self.region).get_caller_identity()['Arn']
        if ':assumed-role/' in arn:
            account = arn.split(':')[4]
            role_name = arn.split('/')[1]
            return f"arn:aws:iam::{account}:role/{role_name}"
        return arn

    def simulate_actions(self, principal_arn: str, actions: List[str]) -> Dict[str, str]:
        """Evaluate actions for a principal.

        Returns:
            Mapping of action name to evaluation decision
        """
        response = self.client.simulate_principal_policy(
            PolicySourceArn=principal_arn,
            ActionNames=actions,
        )
        return {
            result['EvalActionName']: result['EvalDecision']
            for result in response.get('EvaluationResults', [])
        }

    # Discovery

    def _discover_iam_role(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._role_resource(role)
            for role in self._paginate('list_roles', 'Roles')
            if resource_filter.matches_name(role['RoleName'])
        ]

    def _discover_instance_profile(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._profile_resource(profile)
            for profile in self._paginate('list_instance_profiles', 'InstanceProfiles')
            if resource_filter.matches_name(profile['InstanceProfileName'])
        ]

    def _discover_iam_policy(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._policy_resource(policy)
            for policy in self._paginate('list_policies', 'Policies', Scope='Local')
            if resource_filter.matches_name(policy['PolicyName'])
        ]

    # Deletion

    def _delete_iam_role(self, resource: Resource) -> str:
        """Detach managed policies, drop inline ones, leave profiles, then delete."""
        role_name = resource.resource_id

        for policy in self._paginate('list_attached_role_policies', 'AttachedPolicies', RoleName=role_name):
            self.client.detach_role_policy(RoleName=role_name, PolicyArn=policy['PolicyArn'])

        for policy_name in self._paginate('list_role_policies', 'PolicyNames', RoleName=role_name):
            self.client.delete_role_policy(RoleName=role_name, PolicyName=policy_name)

        for profile in self._paginate('list_instance_profiles_for_role', 'InstanceProfiles', RoleName=role_name):
            self.client.remove_role_from_instance_profile(
                InstanceProfileName=profile['InstanceProfileName'], RoleName=role_name
            )

        self.client.delete_role(RoleName=role_name)
        return f"Deleted IAM role {role_name}"

    def _delete_instance_profile(self, resource: Resource) -> str:
        profile_name = resource.resource_id
        for role_name in resource.metadata.get('roles', []):
            try:
                self.client.remove_role_from_instance_profile(
                    InstanceProfileName=profile_name, RoleName=role_name
                )
            except ClientError as e:
                if not is_not_found(e):
                    raise
        self.client.delete_instance_profile(InstanceProfileName=profile_name)
        return f"Deleted instance profile {profile_name}"

    def _delete_iam_policy(self, resource: Resource) -> str:
        """Detach a policy everywhere, drop non-default versions, then delete it."""
        policy_arn = resource.metadata['arn']

        entities = self.client.list_entities_for_policy(PolicyArn=policy_arn)
        for role in entities.get('PolicyRoles', []):
            self.client.detach_role_policy(RoleName=role['RoleName'], PolicyArn=policy_arn)
        for user in entities.get('PolicyUsers', []):
            self.client.detach_user_policy(UserName=user['UserName'], PolicyArn=policy_arn)
        for group in entities.get('PolicyGroups', []):
            self.client.detach_group_policy(GroupName=group['GroupName'], PolicyArn=policy_arn)

        for version in self.client.list_policy_versions(PolicyArn=policy_arn).get('Versions', []):
            if not version['IsDefaultVersion']:
                self.client.delete_policy_version(PolicyArn=policy_arn, VersionId=version['VersionId'])

        self.client.delete_policy(PolicyArn=policy_arn)
        return f"Deleted IAM policy {resource.resource_id}"

    # Internals

    def _role_resource(self, role: Dict) -> Resource:
        return self._resource(
            'iam_role', role['RoleName'], 'available',
            tags_to_dict(role.get('Tags')), arn=role['Arn'], name=role['RoleName'],
        )

    def _profile_resource(self, profile: Dict) -> Resource:
        return self._resource(
            'instance_profile', profile['InstanceProfileName'], 'available',
            tags_to_dict(profile.get('Tags')),
            arn=profile['Arn'], name=profile['InstanceProfileName'],
            roles=[role['RoleName'] for role in profile.get('Roles', [])],
        )

    def _policy_resource(self, policy: Dict) -> Resource:
        return self._resource(
            'iam_policy', policy['PolicyName'], 'available',
            tags_to_dict(policy.get('Tags')),
            arn=policy['Arn'], name=policy['PolicyName'],
            attachment_count=policy.get('AttachmentCount', 0),
        )
