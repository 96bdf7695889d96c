"""
EC2 service manager covering compute and VPC networking resources.
"""
import logging
from typing import Dict, List, Optional

from botocore.exceptions import ClientError

from .base import BaseServiceManager, ResourceFilter, is_not_found, tags_to_dict
from ..core.exceptions import ServiceError
from ..core.models import Resource
from ..core.polling import poll_until

logger = logging.getLogger(__name__)

LIVE_INSTANCE_STATES = ('pending', 'running', 'stopping', 'stopped')
LIVE_NAT_STATES = ('pending', 'available', 'deleting')
LIVE_PEERING_STATES = ('active', 'pending-acceptance')


class EC2ServiceManager(BaseServiceManager):
    """Service manager for EC2 instances, launch templates and VPC networking."""

    resource_types = (
        'instance', 'launch_template', 'nat_gateway', 'elastic_ip',
        'vpc_endpoint', 'vpc_peering', 'network_interface', 'subnet',
        'route_table', 'security_group', 'network_acl', 'internet_gateway',
        'vpc', 'flow_log',
    )

    @property
    def service_name(self) -> str:
        return 'ec2'

    # Read helpers used by the inspector

    def list_addresses(self) -> List[Resource]:
        """Every Elastic IP in the region, associated or not."""
        addresses = self.client.describe_addresses().get('Addresses', [])
        return [self._address_resource(address) for address in addresses]

    def list_vpcs(self) -> List[Resource]:
        return [self._vpc_resource(vpc) for vpc in self._paginate('describe_vpcs', 'Vpcs')]

    def list_subnets(self) -> List[Resource]:
        return [self._subnet_resource(subnet) for subnet in self._paginate('describe_subnets', 'Subnets')]

    def internet_gateway_ids(self, vpc_id: str) -> List[str]:
        gateways = self._paginate(
            'describe_internet_gateways', 'InternetGateways',
            Filters=[{'Name': 'attachment.vpc-id', 'Values': [vpc_id]}],
        )
        return [gateway['InternetGatewayId'] for gateway in gateways]

    def count_instances(self, vpc_id: str) -> int:
        count = 0
        for reservation in self._paginate('describe_instances', 'Reservations'):
            for instance in reservation['Instances']:
                if instance.get('VpcId') == vpc_id and instance['State']['Name'] in LIVE_INSTANCE_STATES:
                    count += 1
        return count

    def available_zones(self) -> List[str]:
        zones = self.client.describe_availability_zones().get('AvailabilityZones', [])
        return [zone['ZoneName'] for zone in zones if zone.get('State') == 'available']

    def instance_type_vcpus(self, instance_type: str) -> Optional[int]:
        """Default vCPU count of an instance type, or None if unknown."""
        try:
            response = self.client.describe_instance_types(InstanceTypes=[instance_type])
        except ClientError as e:
            if 'InvalidInstanceType' in e.response.get('Error', {}).get('Code', ''):
                return None
            raise
        types = response.get('InstanceTypes', [])
        if not types:
            return None
        return types[0]['VCpuInfo']['DefaultVCpus']

    def instance_type_offered(self, instance_type: str) -> bool:
        offerings = self._paginate(
            'describe_instance_type_offerings', 'InstanceTypeOfferings',
            LocationType='region',
            Filters=[{'Name': 'instance-type', 'Values': [instance_type]}],
        )
        return any(offering['InstanceType'] == instance_type for offering in offerings)

    def release_address(self, allocation_id: str) -> None:
        self.client.release_address(AllocationId=allocation_id)

    def network_interface_status(self, eni_id: str) -> Optional[str]:
        try:
            response = self.client.describe_network_interfaces(NetworkInterfaceIds=[eni_id])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        interfaces = response.get('NetworkInterfaces', [])
        return interfaces[0]['Status'] if interfaces else None

    # Discovery

    def _discover_instance(self, resource_filter: ResourceFilter) -> List[Resource]:
        resources = []
        for reservation in self._paginate('describe_instances', 'Reservations'):
            for instance in reservation['Instances']:
                tags = tags_to_dict(instance.get('Tags'))
                state = instance['State']['Name']
                if state in LIVE_INSTANCE_STATES and resource_filter.matches_name(tags.get('Name')):
                    resources.append(self._resource(
                        'instance', instance['InstanceId'], state, tags,
                        instance_type=instance.get('InstanceType'),
                        vpc_id=instance.get('VpcId'),
                    ))
        return resources

    def _discover_launch_template(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._resource(
                'launch_template', template['LaunchTemplateId'], 'available',
                tags_to_dict(template.get('Tags')), name=template['LaunchTemplateName'],
            )
            for template in self._paginate('describe_launch_templates', 'LaunchTemplates')
            if resource_filter.matches_name(template['LaunchTemplateName'])
        ]

    def _discover_nat_gateway(self, resource_filter: ResourceFilter) -> List[Resource]:
        resources = []
        for gateway in self._paginate('describe_nat_gateways', 'NatGateways'):
            tags = tags_to_dict(gateway.get('Tags'))
            if gateway['State'] not in LIVE_NAT_STATES:
                continue
            if gateway.get('VpcId') in resource_filter.vpc_ids or resource_filter.matches_name(tags.get('Name')):
                resources.append(self._resource(
                    'nat_gateway', gateway['NatGatewayId'], gateway['State'], tags,
                    vpc_id=gateway.get('VpcId'),
                    allocation_ids=[
                        address['AllocationId']
                        for address in gateway.get('NatGatewayAddresses', [])
                        if address.get('AllocationId')
                    ],
                ))
        return resources

    def _discover_elastic_ip(self, resource_filter: ResourceFilter) -> List[Resource]:
        """Project-tagged Elastic IPs that are not associated with anything."""
        return [
            address for address in self.list_addresses()
            if not address.metadata.get('association_id')
            and resource_filter.matches_name(address.tags.get('Name'))
        ]

    def _discover_vpc_endpoint(self, resource_filter: ResourceFilter) -> List[Resource]:
        if not resource_filter.vpc_ids:
            return []
        return [
            self._resource(
                'vpc_endpoint', endpoint['VpcEndpointId'], endpoint.get('State', 'unknown'),
                tags_to_dict(endpoint.get('Tags')), vpc_id=endpoint['VpcId'],
            )
            for endpoint in self._paginate('describe_vpc_endpoints', 'VpcEndpoints')
            if endpoint['VpcId'] in resource_filter.vpc_ids
            and endpoint.get('State', '').lower() not in ('deleted', 'deleting')
        ]

    def _discover_vpc_peering(self, resource_filter: ResourceFilter) -> List[Resource]:
        if not resource_filter.vpc_ids:
            return []
        resources = []
        for peering in self._paginate('describe_vpc_peering_connections', 'VpcPeeringConnections'):
            status = peering.get('Status', {}).get('Code', '')
            vpcs = {
                peering.get('RequesterVpcInfo', {}).get('VpcId'),
                peering.get('AccepterVpcInfo', {}).get('VpcId'),
            }
            if status in LIVE_PEERING_STATES and vpcs & set(resource_filter.vpc_ids):
                resources.append(self._resource(
                    'vpc_peering', peering['VpcPeeringConnectionId'], status,
                    tags_to_dict(peering.get('Tags')),
                ))
        return resources

    def _discover_network_interface(self, resource_filter: ResourceFilter) -> List[Resource]:
        if not resource_filter.vpc_ids:
            return []
        return [
            self._resource(
                'network_interface', interface['NetworkInterfaceId'], interface['Status'],
                tags_to_dict(interface.get('TagSet')),
                vpc_id=interface['VpcId'],
                description=interface.get('Description', ''),
            )
            for interface in self._paginate('describe_network_interfaces', 'NetworkInterfaces')
            if interface.get('VpcId') in resource_filter.vpc_ids
        ]

    def _discover_subnet(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            subnet for subnet in self.list_subnets()
            if subnet.metadata['vpc_id'] in resource_filter.vpc_ids
        ]

    def _discover_route_table(self, resource_filter: ResourceFilter) -> List[Resource]:
        resources = []
        for table in self._paginate('describe_route_tables', 'RouteTables'):
            if table['VpcId'] not in resource_filter.vpc_ids:
                continue
            associations = table.get('Associations', [])
            if any(association.get('Main') for association in associations):
                continue
            resources.append(self._resource(
                'route_table', table['RouteTableId'], 'available',
                tags_to_dict(table.get('Tags')), vpc_id=table['VpcId'],
                association_ids=[
                    association['RouteTableAssociationId']
                    for association in associations
                    if association.get('RouteTableAssociationId')
                ],
            ))
        return resources

    def _discover_security_group(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._resource(
                'security_group', group['GroupId'], 'available',
                tags_to_dict(group.get('Tags')),
                vpc_id=group.get('VpcId'), name=group['GroupName'],
                ingress=group.get('IpPermissions', []),
                egress=group.get('IpPermissionsEgress', []),
            )
            for group in self._paginate('describe_security_groups', 'SecurityGroups')
            if group.get('VpcId') in resource_filter.vpc_ids and group['GroupName'] != 'default'
        ]

    def _discover_network_acl(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._resource(
                'network_acl', acl['NetworkAclId'], 'available',
                tags_to_dict(acl.get('Tags')), vpc_id=acl['VpcId'],
            )
            for acl in self._paginate('describe_network_acls', 'NetworkAcls')
            if acl['VpcId'] in resource_filter.vpc_ids and not acl.get('IsDefault')
        ]

    def _discover_internet_gateway(self, resource_filter: ResourceFilter) -> List[Resource]:
        resources = []
        for gateway in self._paginate('describe_internet_gateways', 'InternetGateways'):
            attached = [attachment['VpcId'] for attachment in gateway.get('Attachments', [])]
            tags = tags_to_dict(gateway.get('Tags'))
            if set(attached) & set(resource_filter.vpc_ids) or resource_filter.matches_name(tags.get('Name')):
                resources.append(self._resource(
                    'internet_gateway', gateway['InternetGatewayId'], 'available', tags,
                    attached_vpc_ids=attached,
                ))
        return resources

    def _discover_vpc(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            vpc for vpc in self.list_vpcs()
            if not vpc.metadata['is_default'] and resource_filter.matches_name(vpc.tags.get('Name'))
        ]

    def _discover_flow_log(self, resource_filter: ResourceFilter) -> List[Resource]:
        return [
            self._resource(
                'flow_log', flow_log['FlowLogId'], flow_log.get('FlowLogStatus', 'unknown'),
                tags_to_dict(flow_log.get('Tags')),
                log_group_name=flow_log.get('LogGroupName'),
                vpc_id=flow_log.get('ResourceId'),
            )
            for flow_log in self._paginate('describe_flow_logs', 'FlowLogs')
            if flow_log.get('ResourceId') in resource_filter.vpc_ids
            or resource_filter.matches_name(flow_log.get('LogGroupName'),
                                            tags_to_dict(flow_log.get('Tags')).get('Name'))
        ]

    # Deletion

    def _delete_instance(self, resource: Resource) -> str:
        instance_id = resource.resource_id
        self.client.terminate_instances(InstanceIds=[instance_id])

        result = poll_until(
            lambda: self._instance_state(instance_id),
            lambda state: state in (None, 'terminated'),
            interval=self.waits.interval,
            timeout=self.waits.instance_timeout,
            description=f"termination of {instance_id}",
        )
        if not result.succeeded:
            raise ServiceError(
                f"Instance {instance_id} still {result.last_value} after "
                f"{self.waits.instance_timeout:.0f}s; dependent network resources cannot be deleted yet"
            )
        return f"Terminated instance {instance_id}"

    def _delete_launch_template(self, resource: Resource) -> str:
        self.client.delete_launch_template(LaunchTemplateId=resource.resource_id)
        return f"Deleted launch template {resource.name}"

    def _delete_nat_gateway(self, resource: Resource) -> str:
        gateway_id = resource.resource_id
        self.client.delete_nat_gateway(NatGatewayId=gateway_id)

        result = poll_until(
            lambda: self._nat_gateway_state(gateway_id),
            lambda state: state in (None, 'deleted'),
            interval=self.waits.interval,
            timeout=self.waits.nat_gateway_timeout,
            description=f"deletion of NAT gateway {gateway_id}",
        )
        if not result.succeeded:
            raise ServiceError(
                f"NAT gateway {gateway_id} still {result.last_value} after "
                f"{self.waits.nat_gateway_timeout:.0f}s; its Elastic IPs were not released"
            )

        released = []
        for allocation_id in resource.metadata.get('allocation_ids', []):
            try:
                self.release_address(allocation_id)
                released.append(allocation_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise
        suffix = f" and released {', '.join(released)}" if released else ""
        return f"Deleted NAT gateway {gateway_id}{suffix}"

    def _delete_elastic_ip(self, resource: Resource) -> str:
        self.release_address(resource.resource_id)
        return f"Released Elastic IP {resource.metadata.get('public_ip', resource.resource_id)}"

    def _delete_vpc_endpoint(self, resource: Resource) -> str:
        response = self.client.delete_vpc_endpoints(VpcEndpointIds=[resource.resource_id])
        for failure in response.get('Unsuccessful', []):
            error = failure.get('Error', {})
            raise ClientError(
                {'Error': {'Code': error.get('Code', 'Unknown'), 'Message': error.get('Message', '')}},
                'DeleteVpcEndpoints',
            )
        return f"Deleted VPC endpoint {resource.resource_id}"

    def _delete_vpc_peering(self, resource: Resource) -> str:
        self.client.delete_vpc_peering_connection(VpcPeeringConnectionId=resource.resource_id)
        return f"Deleted VPC peering connection {resource.resource_id}"

    def _delete_network_interface(self, resource: Resource) -> str:
        self.client.delete_network_interface(NetworkInterfaceId=resource.resource_id)
        return f"Deleted network interface {resource.resource_id}"

    def _delete_subnet(self, resource: Resource) -> str:
        self.client.delete_subnet(SubnetId=resource.resource_id)
        return f"Deleted subnet {resource.resource_id} ({resource.metadata.get('cidr_block')})"

    def _delete_route_table(self, resource: Resource) -> str:
        for association_id in resource.metadata.get('association_ids', []):
            try:
                self.client.disassociate_route_table(AssociationId=association_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise
        self.client.delete_route_table(RouteTableId=resource.resource_id)
        return f"Deleted route table {resource.resource_id}"

    def _delete_security_group(self, resource: Resource) -> str:
        group_id = resource.resource_id
        ingress = resource.metadata.get('ingress') or []
        egress = resource.metadata.get('egress') or []
        if ingress:
            self._revoke_rules(self.client.revoke_security_group_ingress, group_id, ingress)
        if egress:
            self._revoke_rules(self.client.revoke_security_group_egress, group_id, egress)
        self.client.delete_security_group(GroupId=group_id)
        return f"Deleted security group {resource.name}"

    def _delete_network_acl(self, resource: Resource) -> str:
        self.client.delete_network_acl(NetworkAclId=resource.resource_id)
        return f"Deleted network ACL {resource.resource_id}"

    def _delete_internet_gateway(self, resource: Resource) -> str:
        gateway_id = resource.resource_id
        for vpc_id in resource.metadata.get('attached_vpc_ids', []):
            try:
                self.client.detach_internet_gateway(InternetGatewayId=gateway_id, VpcId=vpc_id)
            except ClientError as e:
                if not (is_not_found(e) or 'NotAttached' in e.response['Error'].get('Code', '')):
                    raise
        self.client.delete_internet_gateway(InternetGatewayId=gateway_id)
        return f"Detached and deleted internet gateway {gateway_id}"

    def _delete_vpc(self, resource: Resource) -> str:
        self.client.delete_vpc(VpcId=resource.resource_id)
        return f"Deleted VPC {resource.resource_id} ({resource.name})"

    def _delete_flow_log(self, resource: Resource) -> str:
        response = self.client.delete_flow_logs(FlowLogIds=[resource.resource_id])
        for failure in response.get('Unsuccessful', []):
            error = failure.get('Error', {})
            raise ClientError(
                {'Error': {'Code': error.get('Code', 'Unknown'), 'Message': error.get('Message', '')}},
                'DeleteFlowLogs',
            )
        return f"Deleted flow log {resource.resource_id}"

    # Internals

    def _revoke_rules(self, revoke, group_id: str, permissions: List[Dict]) -> None:
        """Revoke rules so groups that reference each other can be deleted."""
        try:
            revoke(GroupId=group_id, IpPermissions=[self._clean_permission(p) for p in permissions])
        except ClientError as e:
            if is_not_found(e):
                return
            logger.warning(f"Could not revoke rules on {group_id}: {e}")

    @staticmethod
    def _clean_permission(permission: Dict) -> Dict:
        return {key: value for key, value in permission.items() if value not in ([], None)}

    def _instance_state(self, instance_id: str) -> Optional[str]:
        try:
            response = self.client.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        for reservation in response.get('Reservations', []):
            for instance in reservation['Instances']:
                return instance['State']['Name']
        return None

    def _nat_gateway_state(self, gateway_id: str) -> Optional[str]:
        try:
            response = self.client.describe_nat_gateways(NatGatewayIds=[gateway_id])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        gateways = response.get('NatGateways', [])
        return gateways[0]['State'] if gateways else None

    def _address_resource(self, address: Dict) -> Resource:
        association_id = address.get('AssociationId')
        return self._resource(
            'elastic_ip', address.get('AllocationId', address.get('PublicIp')),
            'associated' if association_id else 'unassociated',
            tags_to_dict(address.get('Tags')),
            public_ip=address.get('PublicIp'),
            association_id=association_id,
            network_interface_id=address.get('NetworkInterfaceId'),
        )

    def _vpc_resource(self, vpc: Dict) -> Resource:
        return self._resource(
            'vpc', vpc['VpcId'], vpc.get('State', 'available'),
            tags_to_dict(vpc.get('Tags')),
            cidr_block=vpc.get('CidrBlock'),
            is_default=vpc.get('IsDefault', False),
        )

    def _subnet_resource(self, subnet: Dict) -> Resource:
        return self._resource(
            'subnet', subnet['SubnetId'], subnet.get('State', 'available'),
            tags_to_dict(subnet.get('Tags')),
            cidr_block=subnet['CidrBlock'],
            vpc_id=subnet['VpcId'],
            availability_zone=subnet.get('AvailabilityZone'),
            map_public_ip_on_launch=subnet.get('MapPublicIpOnLaunch', False),
        )
