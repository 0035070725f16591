import codecs
import os
import platform

from configobj import ConfigObj, ConfigObjError, Section
from validate import Validator

# The default extension for configuration files
config_extension = '.cfg'

# The name of the bridge configuration
config_name = 'tcpbridge'

# The directory holding the default and schema configurations shipped with the package
package_directory = os.path.dirname(os.path.abspath(__file__))


def config_flavor(name, flavor=None):
    configname = name if not flavor else name + '.' + flavor
    return configname


def config_filename(name, directory=None):
    """
    Determines the location of a config file in the given directory.
    """
    config_file = os.path.join(directory, name + config_extension)
    return config_file


def load_config_file_base(file, must_exist=True):
    """
    Loads a configuration file
    :param file:        The configuration file to load
    :param must_exist:  when True, the file must exist or an exception is thrown.
    :return: The ConfigObj instance for the file.
    """
    try:
        return ConfigObj(file, interpolation='Template', file_error=must_exist) \
            if must_exist or os.path.exists(file) else ConfigObj()
    except ConfigObjError as e:
        raise type(e)(str(e) + ' at ' + file)


def config_flavor_file(name, directory, subpart=None) -> ConfigObj:
    """
    Loads a specialization of a config file. The configuration file is expected to be named
    after the base, followed by a period and then the specialization, if the specialization is given,
    otherwise just the base name.
    :param name:    The name of the base configuration
    :param subpart: The name of the specialization.
    :return: The ConfigObj for the configuration file.
    """
    configname = config_flavor(name, subpart)
    file = config_filename(configname, directory)
    config = load_config_file_base(file, False)
    return config


def map_os_name(name):
    """
    >>> map_os_name('Windows')
    'windows'
    >>> map_os_name("Darwin")
    'osx'
    """
    name = name.lower()
    if name == 'darwin':
        name = 'osx'
    return name


def os_name():
    return map_os_name(platform.system())


def user_config_file(name):
    return os.path.expanduser('~/.' + name + config_extension)


def load_config(name, directory, defaults_directory=package_directory):
    """
        Loads all the configuration files that relate to the given name.
        Configurations are merged in this order, later ones taking precedence:
        - the default specialization (from defaults_directory)
        - the platform specialization
        - the user override in the home directory
        - the base configuration
        The result is validated against the "schema" specialization, found in defaults_directory,
        which also converts the values to their declared types.
    :param directory: the location of the base and platform configuration files
    :raises ConfigObjError: the merged configuration failed validation
    """
    default_config = config_flavor_file(name, defaults_directory, 'default')
    platform_config = config_flavor_file(name, directory, os_name())
    user_config = load_config_file_base(user_config_file(name), must_exist=False)
    local_config = config_flavor_file(name, directory)
    schema = config_filename(config_flavor(name, 'schema'), defaults_directory)
    config = ConfigObj(configspec=schema)
    config.merge(default_config)
    config.merge(platform_config)
    config.merge(user_config)
    config.merge(local_config)

    validator = Validator()
    result = config.validate(validator)
    if result is not True:
        raise ConfigObjError("the config file %s failed validation %s" % (name, result))
    return config


def fetch_conf_path(conf: Section, path):
    """
    Retrieves the named configuration section
    :param conf:        The root configuration
    :param path:        An iterable that lists the names of the sections to resolve
    :return: The configuration section identified by the path, or None
    """
    for p in path:    # lookup specific section
        conf = conf.get(p, None)
        if conf is None:
            return
    return conf


def apply_conf_path(conf: Section, name_parts, target):
    """
    Applies a configuration path to a given target object
    :param conf:        The root configuration object
    :param name_parts:  The path of the configuration to apply
    :param target:      The target object that receives the configured values
    """
    conf = fetch_conf_path(conf, name_parts)
    if conf:
        apply_conf(conf, target)


def apply_conf(conf: Section, target):
    """
    Applies the attributes contained in a configuration object to a target object.
    It does this by iterating over the items in the configuration and setting any attributes with the same name.
    """
    for k, v in conf.items():
        if hasattr(target, k):
            setattr(target, k, v)


def unescape(value):
    r"""
    Decodes backslash escapes written in a configuration value.
    >>> unescape('\\r\\n')
    '\r\n'
    """
    return codecs.decode(value, 'unicode_escape') if '\\' in value else value


class BridgeSettings:
    """
    The settings of the bridge. The class attributes are the built-in defaults, used when
    no configuration is loaded.
    """
    listen_host = '0.0.0.0'
    listen_port = 3001
    timeout = 5000
    connect_timeout = 5000
    grace_period = 1000
    encoding = 'utf8'
    delimiter = '\n'
    log_level = 'INFO'

    def __init__(self, **overrides):
        for k, v in overrides.items():
            if v is not None:
                if not hasattr(self, k):
                    raise AttributeError('unknown setting %s' % k)
                setattr(self, k, v)

    def as_dict(self):
        return {k: getattr(self, k) for k in ('listen_host', 'listen_port', 'timeout', 'connect_timeout',
                                              'grace_period', 'encoding', 'delimiter', 'log_level')}

    def __repr__(self):
        return 'BridgeSettings(%s)' % ', '.join('%s=%r' % item for item in sorted(self.as_dict().items()))


def load_settings(directory=None, name=config_name, **overrides) -> BridgeSettings:
    """
    Loads the bridge settings from the configuration files, then applies any overrides that are not None.
    :param directory: the directory holding the base configuration file. Defaults to the working directory.
    """
    conf = load_config(name, directory or os.getcwd())
    settings = BridgeSettings()
    apply_conf_path(conf, ['bridge'], settings)
    settings.delimiter = unescape(settings.delimiter)
    for k, v in overrides.items():
        if v is not None:
            setattr(settings, k, v)
    return settings
